import pytest

from scholar_rag.retrieval.document_store import InMemoryDocumentStore
from scholar_rag.retrieval.embedder import HashingEmbedder
from scholar_rag.types import Chunk

CORPUS = [
    Chunk(
        chunk_id="pmb-0",
        document_id="pmb",
        document_title="Panduan Penerimaan Mahasiswa Baru",
        content=(
            "Syarat pendaftaran mahasiswa baru meliputi ijazah SMA, pas foto, dan kartu keluarga. "
            "Pendaftaran dilakukan secara online melalui portal kampus."
        ),
    ),
    Chunk(
        chunk_id="biaya-0",
        document_id="biaya",
        document_title="Rincian Biaya Kuliah",
        content=(
            "Biaya kuliah per semester untuk program sarjana adalah Rp 7.500.000. "
            "Uang formulir sebesar Rp 300.000 dibayar sekali."
        ),
    ),
    Chunk(
        chunk_id="kalender-0",
        document_id="kalender",
        document_title="Kalender Akademik",
        content="Semester ganjil dimulai pada bulan September dan berakhir pada bulan Januari.",
    ),
    Chunk(
        chunk_id="library-0",
        document_id="library",
        document_title="Library Guide",
        content=(
            "The university library is open from 8 am to 9 pm on weekdays. "
            "Students need a valid card to borrow books."
        ),
    ),
    Chunk(
        chunk_id="thesis-0",
        document_id="thesis",
        document_title="Thesis Handbook",
        content=(
            "A thesis must cite all sources using APA style. "
            "The thesis defense requires approval from two supervisors."
        ),
    ),
    Chunk(
        chunk_id="tuition-0",
        document_id="tuition",
        document_title="Tuition Policy",
        content="Tuition fees must be paid before the start of each semester. Late payment incurs a fine.",
    ),
]


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def store(embedder: HashingEmbedder) -> InMemoryDocumentStore:
    document_store = InMemoryDocumentStore()
    document_store.upsert(CORPUS, [embedder.embed_sync(chunk.content) for chunk in CORPUS])
    return document_store


@pytest.fixture
def corpus() -> list[Chunk]:
    return list(CORPUS)
