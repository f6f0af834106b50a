"""Deterministic chunker for clinical documents (structured JSON, CCDA and generic XML)."""

from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any
from xml.etree import ElementTree as ET

from clinical_rag.config import settings
from clinical_rag.models.rag import (
    ChunkMetadata,
    ChunkSpan,
    ChunkText,
    ClinicalDocument,
    VectorizedDocument,
)

logger = logging.getLogger(__name__)

FULL_DOCUMENT = "FULL_DOCUMENT"
CCDA_NAMESPACE = "urn:hl7-org:v3"
_NS = {"hl7": CCDA_NAMESPACE}

# Wrapper / bookkeeping fields that carry no clinical meaning
_BUNDLE_NOISE_FIELDS = ("link", "fullUrl", "search")
_RESOURCE_NOISE_FIELDS = ("subject", "id", "status", "identifier", "category")

# CCDA 2.1 section template ids -> section name
CCDA_SECTION_TEMPLATES: dict[str, str] = {
    "2.16.840.1.113883.10.20.22.2.6": "ALLERGIES_AND_INTOLERANCES_SECTION",
    "2.16.840.1.113883.10.20.22.2.6.1": "ALLERGIES_AND_INTOLERANCES_SECTION",
    "2.16.840.1.113883.10.20.22.2.8": "ASSESSMENT_SECTION",
    "2.16.840.1.113883.10.20.22.2.9": "ASSESSMENT_AND_PLAN_SECTION",
    "2.16.840.1.113883.10.20.22.2.500": "CARE_TEAMS_SECTION",
    "2.16.840.1.113883.10.20.22.2.13": "CHIEF_COMPLAINT_AND_REASON_FOR_VISIT_SECTION",
    "1.3.6.1.4.1.19376.1.5.3.1.1.13.2.1": "CHIEF_COMPLAINT_SECTION",
    "2.16.840.1.113883.10.20.22.2.24": "DISCHARGE_DIAGNOSIS_SECTION",
    "2.16.840.1.113883.10.20.22.2.11": "DISCHARGE_MEDICATIONS_SECTION",
    "2.16.840.1.113883.10.20.22.2.11.1": "DISCHARGE_MEDICATIONS_SECTION",
    "2.16.840.1.113883.10.20.22.2.22": "ENCOUNTERS_SECTION",
    "2.16.840.1.113883.10.20.22.2.22.1": "ENCOUNTERS_SECTION",
    "2.16.840.1.113883.10.20.22.2.15": "FAMILY_HISTORY_SECTION",
    "2.16.840.1.113883.10.20.22.2.14": "FUNCTIONAL_STATUS_SECTION",
    "2.16.840.1.113883.10.20.22.2.60": "GOALS_SECTION",
    "2.16.840.1.113883.10.20.22.2.58": "HEALTH_CONCERNS_SECTION",
    "1.3.6.1.4.1.19376.1.5.3.1.3.4": "HISTORY_OF_PRESENT_ILLNESS_SECTION",
    "1.3.6.1.4.1.19376.1.5.3.1.3.5": "HOSPITAL_COURSE_SECTION",
    "2.16.840.1.113883.10.20.22.2.2": "IMMUNIZATIONS_SECTION",
    "2.16.840.1.113883.10.20.22.2.2.1": "IMMUNIZATIONS_SECTION",
    "2.16.840.1.113883.10.20.22.2.45": "INSTRUCTIONS_SECTION",
    "2.16.840.1.113883.10.20.22.2.23": "MEDICAL_EQUIPMENT_SECTION",
    "2.16.840.1.113883.10.20.22.2.39": "MEDICAL_HISTORY_SECTION",
    "2.16.840.1.113883.10.20.22.2.38": "MEDICATIONS_ADMINISTERED_SECTION",
    "2.16.840.1.113883.10.20.22.2.1": "MEDICATIONS_SECTION",
    "2.16.840.1.113883.10.20.22.2.1.1": "MEDICATIONS_SECTION",
    "2.16.840.1.113883.10.20.22.2.56": "MENTAL_STATUS_SECTION",
    "2.16.840.1.113883.10.20.22.2.65": "NOTES_SECTION",
    "2.16.840.1.113883.10.20.22.2.18": "PAYERS_SECTION",
    "2.16.840.1.113883.10.20.2.10": "PHYSICAL_EXAM_SECTION",
    "2.16.840.1.113883.10.20.22.2.10": "PLAN_OF_TREATMENT_SECTION",
    "2.16.840.1.113883.10.20.22.2.5": "PROBLEM_SECTION",
    "2.16.840.1.113883.10.20.22.2.5.1": "PROBLEM_SECTION",
    "2.16.840.1.113883.10.20.22.2.7": "PROCEDURES_SECTION",
    "2.16.840.1.113883.10.20.22.2.7.1": "PROCEDURES_SECTION",
    "1.3.6.1.4.1.19376.1.5.3.1.3.1": "REASON_FOR_REFERRAL_SECTION",
    "2.16.840.1.113883.10.20.22.2.12": "REASON_FOR_VISIT_SECTION",
    "2.16.840.1.113883.10.20.22.2.3": "RESULTS_SECTION",
    "2.16.840.1.113883.10.20.22.2.3.1": "RESULTS_SECTION",
    "1.3.6.1.4.1.19376.1.5.3.1.3.18": "REVIEW_OF_SYSTEMS_SECTION",
    "2.16.840.1.113883.10.20.22.2.17": "SOCIAL_HISTORY_SECTION",
    "2.16.840.1.113883.10.20.22.2.4": "VITAL_SIGNS_SECTION",
    "2.16.840.1.113883.10.20.22.2.4.1": "VITAL_SIGNS_SECTION",
}


# --- Structured-record JSON ---


def flatten_object(obj: Any, prefix: str = "") -> dict[str, Any]:
    """Flatten nested dicts/lists into dotted path -> leaf value pairs.

    Lists flatten index-wise (``codes.0``, ``codes.1``). An empty dict or
    list has no children and is kept as a leaf under its own path; an empty
    top-level object therefore flattens to ``{"": {}}``.
    """
    if isinstance(obj, dict):
        items = obj.items()
    elif isinstance(obj, list):
        items = ((str(i), v) for i, v in enumerate(obj))
    else:
        return {prefix: obj}

    flat: dict[str, Any] = {}
    for key, value in items:
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, (dict, list)) and value:
            flat.update(flatten_object(value, path))
        else:
            flat[path] = value
    if not flat:
        flat[prefix] = obj
    return flat


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    # Leaf markers follow JS string coercion so stored chunk text stays stable.
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict):
        return "[object Object]"
    if isinstance(value, list):
        return ",".join(_stringify(item) for item in value)
    return str(value)


def _strip_noise(raw: dict[str, Any]) -> dict[str, Any]:
    cleaned = copy.deepcopy(raw)
    for field in _BUNDLE_NOISE_FIELDS:
        cleaned.pop(field, None)
    resource = cleaned.get("resource")
    if isinstance(resource, dict):
        for field in _RESOURCE_NOISE_FIELDS:
            resource.pop(field, None)
    return cleaned


def serialize_json_record(raw: Any, *, max_chars: int | None = None) -> str:
    """Serialize a structured record into its unique leaf values.

    Values are ordered by their flattened key, de-duplicated after
    stringification, joined with ``|`` and cut to ``max_chars``. The input
    is never mutated.
    """
    if max_chars is None:
        max_chars = settings.max_chars
    cleaned = _strip_noise(raw) if isinstance(raw, dict) else copy.deepcopy(raw)
    flat = flatten_object(cleaned)
    values = [_stringify(flat[key]) for key in sorted(flat)]
    unique = list(dict.fromkeys(values))
    return "|".join(unique)[:max_chars]


# --- Clinical XML ---


def _section_name(section: ET.Element, index: int) -> str:
    for template in section.findall("hl7:templateId", _NS):
        name = CCDA_SECTION_TEMPLATES.get(template.get("root", ""))
        if name:
            return name
    title = section.findtext("hl7:title", default="", namespaces=_NS)
    slug = re.sub(r"[^A-Za-z0-9]+", "_", title).strip("_").upper()
    return f"{slug}_SECTION" if slug else f"SECTION_{index}"


def parse_ccda_sections(xml: str) -> dict[str, str] | None:
    """Parse a CCDA document into ``{section_name: narrative_text}``.

    Returns None when the XML is not a CCDA ``ClinicalDocument``. Sections
    sharing a name are concatenated in document order; sections without
    narrative text are dropped.
    """
    try:
        root = ET.fromstring(xml)
    except ET.ParseError:
        logger.debug("XML did not parse, treating as generic XML")
        return None
    if root.tag != f"{{{CCDA_NAMESPACE}}}ClinicalDocument":
        return None

    sections: dict[str, str] = {}
    for index, section in enumerate(root.iter(f"{{{CCDA_NAMESPACE}}}section")):
        text_el = section.find("hl7:text", _NS)
        if text_el is None:
            continue
        text = " ".join(part.strip() for part in text_el.itertext() if part.strip())
        if not text:
            continue
        name = _section_name(section, index)
        sections[name] = f"{sections[name]}\n{text}" if name in sections else text
    return sections


# --- Tiling ---


def tile_text(text: str, *, size: int, overlap: int) -> list[ChunkSpan]:
    """Cut text into windows of ``size`` that overlap by ``overlap`` characters.

    Windows advance by ``size - overlap`` and stop at the first window that
    reaches the end of the text, so the last one may be shorter. Text at or
    below ``size`` is a single window.
    """
    if overlap >= size:
        raise ValueError("chunk overlap must be smaller than chunk size")
    length = len(text)
    if length <= size:
        return [ChunkSpan(offset=0, size=length)]

    spans: list[ChunkSpan] = []
    start = 0
    while True:
        end = min(start + size, length)
        spans.append(ChunkSpan(offset=start, size=end - start))
        if end >= length:
            break
        start += size - overlap
    return spans


def make_chunk_id(document_id: str, chunk_number: int, section_name: str | None = None) -> str:
    chunk_id = f"{document_id}__chunk_{chunk_number}"
    if section_name:
        chunk_id += f"__section_{section_name}"
    return chunk_id


# --- Document -> chunks ---


def _is_json(content_type: str) -> bool:
    base = content_type.split(";")[0].strip().lower()
    return base == "application/json" or base.endswith("+json")


def _is_xml(content_type: str) -> bool:
    base = content_type.split(";")[0].strip().lower()
    return base in ("application/xml", "text/xml") or base.endswith("+xml")


def _base_metadata(document: ClinicalDocument) -> dict[str, Any]:
    source_id = document.metadata.id if document.metadata else None
    url = source_id if source_id and source_id.startswith("http") else None
    return {
        "category": document.data_record.resource_type,
        "document_type": "clinical_document",
        "source_id": source_id,
        "document_id": document.id,
        "user_id": document.user_id,
        "url": url,
    }


def _append_chunk_set(
    result: VectorizedDocument,
    document: ClinicalDocument,
    text: str,
    *,
    prefix: str = "",
    section_name: str | None = None,
    is_full_document: bool = False,
    chunk_size: int,
    chunk_overlap: int,
) -> None:
    base = _base_metadata(document)
    spans = tile_text(text, size=chunk_size, overlap=chunk_overlap)
    tiled = len(text) > chunk_size
    for number, span in enumerate(spans):
        body = text[span.offset : span.offset + span.size]
        result.chunks.append(
            ChunkText(
                id=make_chunk_id(document.id, number, section_name),
                text=prefix + body,
                chunk=span if tiled else None,
            )
        )
        result.metadata.append(
            ChunkMetadata(
                **base,
                section_name=section_name,
                chunk_number=number,
                is_full_document=is_full_document,
            )
        )


def chunk_document(
    document: ClinicalDocument,
    *,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    max_chars: int | None = None,
) -> VectorizedDocument:
    """Turn one clinical document into parallel chunk and metadata lists.

    The output is a pure function of the document: re-chunking an unchanged
    document reproduces the same ids, texts and order. Unsupported content
    types produce no chunks.
    """
    if chunk_size is None:
        chunk_size = settings.chunk_size
    if chunk_overlap is None:
        chunk_overlap = settings.chunk_overlap
    if max_chars is None:
        max_chars = settings.max_chars

    result = VectorizedDocument()
    record = document.data_record
    raw = record.raw

    if _is_json(record.content_type):
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Document %s: JSON content did not decode, skipping", document.id)
                return result
        text = serialize_json_record(raw, max_chars=max_chars)
        result.chunks.append(ChunkText(id=make_chunk_id(document.id, 0), text=text))
        result.metadata.append(ChunkMetadata(**_base_metadata(document), chunk_number=0))
        return result

    if _is_xml(record.content_type) and isinstance(raw, str):
        sections = parse_ccda_sections(raw)
        if sections is None:
            _append_chunk_set(
                result,
                document,
                raw,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
            )
            return result

        if sections:
            _append_chunk_set(
                result,
                document,
                "\n".join(sections.values()),
                prefix=f"{FULL_DOCUMENT}|",
                is_full_document=True,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
            )
        for name, text in sections.items():
            _append_chunk_set(
                result,
                document,
                text,
                prefix=f"{name}|",
                section_name=name,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
            )
        logger.debug(
            "Document %s: CCDA with %d sections -> %d chunks",
            document.id,
            len(sections),
            len(result.chunks),
        )
        return result

    logger.debug(
        "Document %s: unsupported content type %r, not indexed",
        document.id,
        record.content_type,
    )
    return result


def chunk_documents(documents: list[ClinicalDocument], **kwargs: Any) -> VectorizedDocument:
    """Chunk a batch of documents into one pair of parallel lists."""
    combined = VectorizedDocument()
    for document in documents:
        vectorized = chunk_document(document, **kwargs)
        combined.chunks.extend(vectorized.chunks)
        combined.metadata.extend(vectorized.metadata)
    return combined
