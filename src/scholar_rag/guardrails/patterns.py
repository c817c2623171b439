"""Pattern tables used by the default guardrail service."""

from __future__ import annotations

import re

from scholar_rag.types import Language, Severity

_I = re.IGNORECASE

PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"(?<!\d)(?:\+62|0)[\s-]?8\d{1,3}[\s-]?\d{3,4}[\s-]?\d{3,4}\b"),
    "nik": re.compile(r"\b\d{16}\b"),
    "credit_card": re.compile(r"\b\d{4}[-\s]\d{4}[-\s]\d{4}[-\s]\d{4}\b"),
    "nim": re.compile(r"\b(?:NIM|NPM)[\s:.-]?\d{8,15}\b", _I),
    "ip_address": re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"),
}

CRITICAL_PII = frozenset({"nik", "credit_card"})

INJECTION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, _I)
    for pattern in (
        r"ignore\s+(?:all\s+)?(?:previous|prior|above)\s+(?:instructions?|prompts?|rules?)",
        r"disregard\s+(?:all\s+)?(?:previous|prior|above)",
        r"forget\s+(?:everything|all|your)\s+(?:you|instructions?|rules?)",
        r"you\s+are\s+now\s+(?:a|an|in)\s+(?:new|different|jailbreak)",
        r"pretend\s+(?:you\s+are|to\s+be)\s+(?:a|an)\b",
        r"act\s+as\s+(?:if|though)\s+you",
        r"override\s+(?:your|all|the)\s+(?:instructions?|rules?|guidelines?)",
        r"bypass\s+(?:your|all|the)\s+(?:restrictions?|limitations?|filters?)",
        r"^\s*system\s*:",
        r"\[INST\]",
        r"<<SYS>>",
        r"\{\{.*system.*\}\}",
        r"abaikan\s+(?:semua\s+)?(?:instruksi|perintah|aturan)\s+(?:sebelumnya|di\s+atas)",
        r"lupakan\s+(?:semua|seluruh)\s+(?:instruksi|perintah|aturan)",
        r"pura-pura\s+(?:menjadi|jadi)\s+",
        r"anggap\s+(?:dirimu|kamu)\s+sebagai",
        r"ganti\s+(?:peran|fungsi|tugas)mu\s+menjadi",
    )
)

TOXICITY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, _I)
    for pattern in (
        r"\b(?:hate|kill|murder|attack|destroy|harm)\s+(?:the|all|every)\b",
        r"\b(?:racist|sexist|homophobic|transphobic)\b",
        r"\bcheating\s+(?:on|in)\s+(?:exam|test|assignment)",
        r"\bplagiari[sz]e\b",
        r"\bbuy\s+(?:essay|paper|assignment|homework)",
        r"\b(?:bunuh|serang|hancurkan|musnahkan)\s+(?:semua|seluruh)\b",
        r"\b(?:rasis|seksis)\b",
        r"\bcontek(?:an)?\s+(?:ujian|tugas|uas|uts)",
        r"\bplagiasi\b",
        r"\b(?:jual|beli|joki)\s+(?:skripsi|tugas|makalah|ujian)\b",
    )
)

ACADEMIC_INTEGRITY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, _I)
    for pattern in (
        r"write\s+(?:my|the|an?)\s+(?:essay|paper|assignment|homework)\s+for\s+me",
        r"do\s+(?:my|the)\s+(?:homework|assignment|thesis)\s+for\s+me",
        r"complete\s+(?:my|the)\s+(?:exam|test|quiz)\s+for\s+me",
        r"buatkan\s+(?:saya\s+)?(?:skripsi|tugas|makalah|esai)",
        r"kerjakan\s+(?:tugas|pr|ujian|skripsi)\s+(?:saya|ku)",
        r"bantu\s+contek",
        r"tolong\s+(?:buatkan|kerjakan)\s+(?:skripsi|tesis|tugas)",
        r"carikan\s+jawaban\s+(?:ujian|uts|uas)",
    )
)

QUESTION_PATTERN = re.compile(
    r"\?|\b(?:what|how|why|when|where|who|which|explain|describe|define|apa|bagaimana|"
    r"mengapa|kenapa|kapan|dimana|di\s+mana|siapa|berapa|jelaskan|definisikan)\b",
    _I,
)

ACADEMIC_TOPICS = (
    "research", "study", "paper", "thesis", "dissertation", "lecture", "course",
    "assignment", "exam", "grade", "professor", "student", "university", "college",
    "curriculum", "syllabus", "citation", "methodology", "hypothesis", "experiment",
    "analysis", "literature", "theory", "concept", "framework", "algorithm",
    "penelitian", "studi", "makalah", "skripsi", "tesis", "disertasi", "kuliah",
    "tugas", "ujian", "nilai", "dosen", "mahasiswa", "universitas", "kurikulum",
    "silabus", "sitasi", "metodologi", "hipotesis", "analisis", "teori", "konsep",
    "semester", "sks", "kampus", "fakultas", "jurusan", "prodi", "pendaftaran", "biaya",
)

COMMAND_VERBS = (
    "summarize", "summarise", "analyze", "analyse", "explain", "describe", "define",
    "check", "review", "evaluate", "compare", "discuss", "translate", "help", "find",
    "ringkas", "analisis", "jelaskan", "deskripsikan", "definisikan", "periksa",
    "tinjau", "evaluasi", "bandingkan", "diskusikan", "terjemahkan", "bantu", "cari",
)

NUMERIC_CITATION = re.compile(r"\[(\d+)\]")

REACTION_SEVERITY: dict[str, Severity] = {
    "frustration": "high",
    "disappointment": "medium",
    "confusion": "low",
    "help_request": "low",
}


def _compile(patterns: tuple[str, ...]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, _I) for pattern in patterns)


# Checked Indonesian first, then English; the first match wins.
NEGATIVE_REACTION_PATTERNS: dict[str, dict[Language, tuple[re.Pattern[str], ...]]] = {
    "frustration": {
        "id": _compile((
            r"\bini\s+tidak\s+(?:berguna|guna|membantu)",
            r"\bkamu\s+(?:bodoh|tolol|goblok|tidak\s+berguna)",
            r"\bbuang(?:-buang)?\s+(?:waktu|tenaga)",
            r"\bsaya\s+(?:frustrasi|kesal|marah|jengkel)",
            r"\bberhenti\s+(?:memberi|kasih)\s+jawaban\s+(?:salah|tidak\s+berguna)",
            r"\bapa\s+sih\s+ini",
        )),
        "en": _compile((
            r"\bthis\s+(?:is\s+)?(?:useless|worthless|garbage|trash|terrible|awful|horrible)",
            r"\byou(?:'re|\s+are)\s+(?:useless|stupid|dumb|terrible|the\s+worst)",
            r"\bwhat\s+a\s+(?:waste|joke)",
            r"\bthis\s+doesn'?t\s+(?:work|help|make\s+sense)",
            r"\bi(?:'m|\s+am)\s+(?:so\s+)?(?:frustrated|annoyed|angry|upset)",
            r"\bstop\s+(?:wasting|giving)\s+(?:my\s+time|wrong\s+answers)",
            r"\bcan'?t\s+you\s+(?:understand|do\s+anything\s+right)",
        )),
    },
    "disappointment": {
        "id": _compile((
            r"\bsaya\s+(?:kecewa|harap\s+lebih\s+baik)",
            r"\b(?:bukan|tidak)\s+(?:itu|ini)\s+yang\s+(?:saya\s+)?(?:mau|tanya|maksud)",
            r"\bkamu\s+(?:salah|tidak)\s+paham",
            r"\b(?:jawaban|ini)\s+salah(?:\s+lagi)?",
            r"\bmengecewakan",
        )),
        "en": _compile((
            r"\bi\s+expected\s+(?:better|more)",
            r"\bthis\s+is\s+(?:disappointing|not\s+what\s+i\s+(?:asked|wanted|needed))",
            r"\byou\s+(?:missed|didn'?t\s+understand)\s+(?:the\s+point|my\s+question)",
            r"\bthat'?s\s+not\s+(?:right|correct|what\s+i\s+meant)",
            r"\bwrong\s+(?:again|answer)",
        )),
    },
    "confusion": {
        "id": _compile((
            r"\bsaya\s+(?:tidak|nggak)\s+(?:paham|mengerti|ngerti)",
            r"\bmembingungkan",
            r"\bapa\s+(?:maksud|artinya)(?:mu|nya)?",
            r"\b(?:tidak|nggak)\s+masuk\s+akal",
            r"\bbingung\b",
        )),
        "en": _compile((
            r"\bi\s+don'?t\s+understand",
            r"\bthis\s+(?:is\s+)?confusing",
            r"\bwhat\s+(?:do\s+you\s+mean|are\s+you\s+(?:saying|talking\s+about))",
            r"\bmakes?\s+no\s+sense",
            r"\bexplain\s+(?:better|more\s+clearly|again)",
        )),
    },
    "help_request": {
        "id": _compile((
            r"\btolong\s+(?:bantu|bantuin)",
            r"\bsaya\s+(?:butuh|perlu)\s+bantuan",
            r"\bsaya\s+(?:buntu|stuck|mentok)",
        )),
        "en": _compile((
            r"\bplease\s+help\b",
            r"\bi\s+(?:really\s+)?need\s+help",
            r"\bi(?:'m|\s+am)\s+stuck",
        )),
    },
}

REACTION_RESPONSES: dict[str, dict[Language, str]] = {
    "frustration": {
        "en": (
            "I understand this can be frustrating. Let me try a different approach to help "
            "you better. Could you please clarify what specific aspect isn't working for you?"
        ),
        "id": (
            "Saya memahami ini bisa membuat frustrasi. Mari saya coba pendekatan berbeda untuk "
            "membantu Anda lebih baik. Bisakah Anda jelaskan aspek spesifik mana yang tidak sesuai?"
        ),
    },
    "disappointment": {
        "en": (
            "I apologize that my previous response didn't meet your expectations. Please let "
            "me know if I misunderstood your question."
        ),
        "id": (
            "Mohon maaf jawaban sebelumnya tidak sesuai harapan Anda. Tolong beritahu jika "
            "saya salah memahami pertanyaan Anda."
        ),
    },
    "confusion": {
        "en": "I apologize for the confusion. Which part would you like me to clarify first?",
        "id": "Mohon maaf atas kebingungannya. Bagian mana yang ingin Anda pahami lebih lanjut?",
    },
    "help_request": {
        "en": "Of course, I'm here to help! Please tell me more about what you're trying to accomplish.",
        "id": "Tentu, saya di sini untuk membantu! Ceritakan lebih lanjut apa yang sedang Anda kerjakan.",
    },
}
