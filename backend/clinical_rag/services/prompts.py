"""Prompt templates for the medical records assistant and the reranker."""

from __future__ import annotations

import datetime

from clinical_rag.models.rag import DocumentText, PreparedDocuments
from clinical_rag.services.llm_service import SEARCH_CLOSE, SEARCH_OPEN

MEDICAL_AI_SYSTEM_PROMPT = """\
You are a helpful medical AI assistant. A patient is asking you a question \
about their own health. You have access to the patient's medical records and \
should provide accurate, relevant information based on those records.

Important guidelines:
- Address the patient directly, by name if provided
- Only reference information that is explicitly stated in the provided medical records
- Be clear when information is not available in the records
- Use simple, easy-to-understand language
- Cite specific dates or document types when referencing information
- Respond in Markdown. Use tables when displaying data up to 4 columns
- Be concise, empathetic and supportive
"""

SEARCH_INSTRUCTIONS = f"""\
SEARCHING RECORDS:
If the records below are missing information you need, request more instead \
of answering. Reply with only:
{SEARCH_OPEN}{{"queries": ["<query>", "..."]}}{SEARCH_CLOSE}
Searches perform best with specific clinical queries such as lab result names \
(e.g. CBC, Hemoglobin, Alk Phos) or CCDA section names \
(e.g. ALLERGIES_AND_INTOLERANCES_SECTION). Results are sections of FHIR or \
CCDA documents. Do not request a search once you can answer.
"""


def build_system_prompt(
    search_enabled: bool, demographics: dict[str, str] | None = None
) -> str:
    parts = [MEDICAL_AI_SYSTEM_PROMPT]
    if search_enabled:
        parts.append(SEARCH_INSTRUCTIONS)
    lines = [f"Today's Date: {datetime.date.today().isoformat()}"]
    for key, value in (demographics or {}).items():
        if value:
            lines.append(f"{key}: {value}")
    parts.append("Demographic information about the patient.\n" + "\n".join(lines))
    return "\n\n".join(parts)


def _format_text(index: int, doc: DocumentText) -> str:
    date = f"Date: {doc.date}" if doc.date else "No date"
    return f"[{index}] {date} | {doc.resource_type or 'Unknown type'}\n{doc.text}"


def build_rag_user_prompt(
    query: str, documents: PreparedDocuments, notes: list[str] | None = None
) -> str:
    """Question plus numbered record context and any search-progress notes."""
    body = "\n\n---\n\n".join(
        _format_text(i, doc) for i, doc in enumerate(documents.texts, start=1)
    )
    sections = [f"Patient Question: {query}"]
    if notes:
        sections.append("Search progress:\n" + "\n".join(f"- {n}" for n in notes))
    sections.append(
        f"Relevant Medical Records ({len(documents.texts)} sections from "
        f"{len(documents.source_documents)} documents):\n\n{body}"
    )
    sections.append(
        "Please provide a helpful response to the patient's question based on "
        "these medical records. Ignore records not relevant to the question."
    )
    return "\n\n".join(sections)


def build_search_note(iteration: int, query: str, found: int) -> str:
    return (
        f"I've run an additional query {iteration} time(s) with search term {query} "
        f"and found {found} records using query: {query}. "
        "I will now search through them."
    )


def build_reranking_prompt(query: str) -> str:
    return f"""\
Rate each document's relevance to: "{query}"

You will receive documents labeled as DOCUMENT 1, DOCUMENT 2, etc.

Return a JSON object mapping document numbers to scores (0-10):
{{"1": 8, "2": 3, "3": 9, "4": 2, "5": 7}}

Scoring guidelines:
- 9-10: Document directly answers the query with specific medical data \
(exact test results, diagnoses, etc.)
- 7-8: Document is highly relevant and contains related medical information
- 5-6: Document is somewhat relevant but may be tangential
- 3-4: Document mentions related concepts but lacks specific relevance
- 0-2: Document is unrelated to the query

IMPORTANT:
- Use exactly this format
- Include ALL document numbers
- Scores must be 0-10
- Return ONLY the JSON object, nothing else"""


def format_documents_for_reranking(texts: list[str]) -> str:
    return "\n\n---\n\n".join(
        f"DOCUMENT {i}:\n{text}" for i, text in enumerate(texts, start=1)
    )
