from scholar_rag.agent.orchestrator import SYSTEM_PROMPT, system_prompt
from scholar_rag.agent.tools import SYNTHESIS_INSTRUCTIONS


def test_system_prompt_contains_citation_constraints() -> None:
    assert "Cite every factual statement" in SYSTEM_PROMPT
    assert "Only cite numbers returned by `search_documents`" in SYSTEM_PROMPT
    assert "IN ONE RESPONSE" in SYSTEM_PROMPT


def test_system_prompt_names_the_answer_language() -> None:
    assert "Always answer in Bahasa Indonesia." in system_prompt("id")
    assert "Always answer in English." in system_prompt("en")


def test_synthesis_instructions_forbid_unknown_citations() -> None:
    assert "Use ONLY the numbered sources" in SYNTHESIS_INSTRUCTIONS
    assert "Only cite numbers that appear in the sources list." in SYNTHESIS_INSTRUCTIONS
    assert SYNTHESIS_INSTRUCTIONS.format(language="English").endswith("Write the entire answer in English.")
