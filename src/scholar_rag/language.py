"""Language detection, tokenization and localized messages (English/Indonesian)."""

from __future__ import annotations

import re
from collections import Counter

from scholar_rag.types import Language

_WORD_PATTERN = re.compile(r"[^\w\sÀ-ɏ]", flags=re.UNICODE)
_WHITESPACE = re.compile(r"\s+")

INDONESIAN_STOP_WORDS = frozenset(
    """
    dan atau yang di ke dari ini itu dengan untuk pada adalah sebagai dalam tidak
    akan dapat telah oleh juga sudah saat setelah bisa ada mereka kami kita saya
    anda ia dia kamu beliau tersebut hal antara lain seperti serta bahwa karena
    secara namun tetapi hanya jika maka agar ketika hingga sampai masih pun lagi
    sangat lebih kurang hampir selalu sering kadang jarang begitu demikian yakni
    yaitu penelitian berdasarkan menurut menunjukkan menggunakan terhadap melalui
    terdapat merupakan dilakukan diperoleh apa siapa dimana kapan mengapa
    bagaimana berapa
    """.split()
)

ENGLISH_STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from up about into through
    during before after above below between under again further then once here
    there when where why how all each few more most other some such no nor not
    only own same so than too very can will just should now also been being have
    has had having do does did doing would could might must shall this that
    these those is are was were be it its as if what which who whom
    """.split()
)

_INDONESIAN_MARKERS = frozenset(
    """
    yang dengan untuk dalam adalah dapat telah sudah akan dari dan atau ini itu
    berdasarkan menurut menunjukkan menggunakan terhadap merupakan dilakukan apa
    bagaimana mengapa kapan dimana siapa apakah berapa mahasiswa dosen universitas
    fakultas jurusan skripsi tesis disertasi jelaskan sebutkan uraikan bandingkan
    syarat biaya kuliah pendaftaran tidak ada juga pada oleh serta bisa saya anda
    """.split()
)

_ENGLISH_MARKERS = frozenset(
    """
    the is are was were what how why when where who which and or of to in for with
    does do can should requirements fee fees tuition student students university
    explain describe please this that these those there their
    """.split()
)

_ID_SUFFIXES = ("kan", "an", "i", "lah", "kah", "nya")
_ID_PREFIXES = ("meng", "mem", "men", "me", "peng", "pem", "pen", "pe", "di", "ter", "ber", "ke", "se")

ACADEMIC_SYNONYMS: dict[str, list[str]] = {
    "hypothesis": ["theory", "proposition", "assumption", "conjecture"],
    "methodology": ["methods", "approach", "procedure", "technique"],
    "analysis": ["examination", "evaluation", "assessment", "study"],
    "conclusion": ["findings", "results", "outcome", "summary"],
    "literature review": ["background", "prior work", "related work", "state of the art"],
    "experiment": ["study", "trial", "test", "investigation"],
    "significant": ["notable", "important", "meaningful", "substantial"],
    "correlation": ["relationship", "association", "connection", "link"],
    "variable": ["factor", "parameter", "element", "component"],
    "tuition": ["fee", "cost", "payment"],
    "registration": ["enrollment", "admission", "application"],
    "hipotesis": ["teori", "dugaan", "asumsi", "perkiraan"],
    "metodologi": ["metode", "pendekatan", "prosedur", "teknik", "cara"],
    "analisis": ["pembahasan", "evaluasi", "pengkajian", "telaah", "kajian"],
    "kesimpulan": ["simpulan", "konklusi", "ringkasan", "temuan"],
    "tinjauan pustaka": ["kajian pustaka", "studi literatur", "landasan teori"],
    "penelitian": ["riset", "studi", "kajian", "investigasi"],
    "signifikan": ["bermakna", "penting", "berarti", "nyata"],
    "korelasi": ["hubungan", "keterkaitan", "relasi", "asosiasi"],
    "variabel": ["faktor", "parameter", "unsur", "komponen"],
    "dampak": ["pengaruh", "efek", "akibat", "implikasi"],
    "implementasi": ["penerapan", "pelaksanaan", "eksekusi"],
    "evaluasi": ["penilaian", "pengukuran", "asesmen"],
    "mahasiswa": ["siswa", "pelajar", "peserta didik"],
    "dosen": ["pengajar", "instruktur", "guru besar"],
    "kuliah": ["perkuliahan", "kelas", "mata kuliah"],
    "skripsi": ["tugas akhir", "karya tulis", "laporan akhir"],
    "pendaftaran": ["registrasi", "penerimaan", "admisi"],
    "biaya": ["ongkos", "tarif", "uang kuliah"],
}

MESSAGES: dict[str, dict[Language, str]] = {
    "policy_blocked": {
        "en": "Sorry, your request cannot be processed because it violates the content policy.",
        "id": "Maaf, permintaan Anda tidak dapat diproses karena melanggar kebijakan konten.",
    },
    "tool_unavailable": {
        "en": "Sorry, an error occurred: the requested tool is not available.",
        "id": "Maaf, terjadi kesalahan: alat yang diminta tidak tersedia.",
    },
    "generic_failure": {
        "en": "Sorry, something went wrong while answering your question. Please try again later.",
        "id": "Maaf, terjadi kesalahan saat memproses pertanyaan Anda. Silakan coba lagi nanti.",
    },
    "no_evidence": {
        "en": "I could not find verifiable evidence for this question in the indexed documents.",
        "id": "Saya tidak menemukan bukti yang dapat diverifikasi untuk pertanyaan ini dalam dokumen yang terindeks.",
    },
    "verify_failed": {
        "en": "Unable to verify",
        "id": "Tidak dapat memverifikasi",
    },
}

LANGUAGE_NAMES: dict[Language, str] = {"en": "English", "id": "Bahasa Indonesia"}


def message(key: str, language: Language) -> str:
    return MESSAGES[key][language]


def _words(text: str) -> list[str]:
    cleaned = _WORD_PATTERN.sub(" ", text.lower())
    return [word for word in _WHITESPACE.split(cleaned) if word]


def detect_language(text: str) -> Language:
    """Classify text as Indonesian or English from marker-word counts.

    Ties and texts without any markers resolve to English.
    """

    words = _words(text)
    indonesian = sum(1 for word in words if word in _INDONESIAN_MARKERS)
    english = sum(1 for word in words if word in _ENGLISH_MARKERS)
    return "id" if indonesian > english else "en"


def stem_indonesian(word: str) -> str:
    """Strip one common suffix and then one common prefix."""

    stem = word.lower()
    for suffix in _ID_SUFFIXES:
        if stem.endswith(suffix) and len(stem) > len(suffix) + 2:
            stem = stem[: -len(suffix)]
            break
    for prefix in _ID_PREFIXES:
        if stem.startswith(prefix) and len(stem) > len(prefix) + 2:
            stem = stem[len(prefix) :]
            break
    return stem


def tokenize(text: str, language: Language = "en") -> list[str]:
    stop_words = INDONESIAN_STOP_WORDS if language == "id" else ENGLISH_STOP_WORDS
    tokens = [token for token in _words(text) if len(token) > 2 and token not in stop_words]
    if language == "id":
        return [stem_indonesian(token) for token in tokens]
    return tokens


def extract_keywords(text: str, language: Language | None = None, limit: int = 50) -> list[str]:
    """Return the most frequent index terms of ``text``."""

    lang = language or detect_language(text)
    counts = Counter(tokenize(text, lang))
    return [term for term, _ in counts.most_common(limit)]


def expand_query(query: str, limit: int = 5) -> list[str]:
    """Expand a query with academic synonyms in both directions.

    The original query is always first; duplicates are removed in order.
    """

    expanded = [query]
    lowered = query.lower()
    for term, synonyms in ACADEMIC_SYNONYMS.items():
        if term in lowered:
            pattern = re.compile(re.escape(term), flags=re.IGNORECASE)
            expanded.extend(pattern.sub(synonym, query) for synonym in synonyms)
        for synonym in synonyms:
            if re.search(rf"\b{re.escape(synonym)}\b", lowered):
                pattern = re.compile(rf"\b{re.escape(synonym)}\b", flags=re.IGNORECASE)
                expanded.append(pattern.sub(term, query))

    deduped: list[str] = []
    for item in expanded:
        if item not in deduped:
            deduped.append(item)
    return deduped[:limit]
