"""LLM-judged relevance reranking with dynamic-threshold selection."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any

from clinical_rag.config import settings
from clinical_rag.models.rag import RerankingDocument, RerankResult
from clinical_rag.services.llm_service import (
    ChatMessage,
    ChatProvider,
    ChatRequest,
    decode_model_json,
)
from clinical_rag.services.prompts import (
    build_reranking_prompt,
    format_documents_for_reranking,
)

logger = logging.getLogger(__name__)

RERANK_TEMPERATURE = 0.1
FALLBACK_BATCH_REASON = "Fallback - failed after retry"
FALLBACK_CALL_REASON = "Fallback - ranking unavailable"
NEUTRAL_SCORE = 5.0


class ScoreValidationError(Exception):
    """A model response that does not score every document in the batch."""


def create_batches(texts: list[str], batch_size: int) -> list[tuple[int, list[str]]]:
    """Split texts into ``(start_index, texts)`` batches."""
    return [
        (start, texts[start : start + batch_size])
        for start in range(0, len(texts), batch_size)
    ]


def _score_schema(count: int) -> dict[str, Any]:
    keys = [str(i) for i in range(1, count + 1)]
    return {
        "type": "object",
        "properties": {k: {"type": "integer", "minimum": 0, "maximum": 10} for k in keys},
        "required": keys,
    }


def parse_scores(response: Any, count: int) -> list[float]:
    """Validate a ``{"1": score, ...}`` response for a batch of ``count`` documents."""
    decoded = decode_model_json(response)
    if decoded.status == "failed" or decoded.data is None:
        raise ScoreValidationError(
            f'Invalid JSON format. Expected {{"1": score, "2": score, ...}} ({decoded.error})'
        )

    scores: list[float] = []
    errors: list[str] = []
    for i in range(1, count + 1):
        score = decoded.data.get(str(i))
        if score is None:
            errors.append(f"Missing score for document {i}")
        elif (
            isinstance(score, bool)
            or not isinstance(score, (int, float))
            or not math.isfinite(score)
            or not 0 <= score <= 10
        ):
            errors.append(f"Invalid score for document {i}: {score!r} (must be 0-10)")
        else:
            scores.append(float(score))
    if errors:
        raise ScoreValidationError("; ".join(errors))
    return scores


def _fallback_batch(start: int, batch: list[str]) -> list[RerankingDocument]:
    return [
        RerankingDocument(
            text=text,
            relevance_score=NEUTRAL_SCORE + (len(batch) - i) * 0.1,
            relevance_reason=FALLBACK_BATCH_REASON,
            index=start + i,
        )
        for i, text in enumerate(batch)
    ]


async def rerank_batch(
    provider: ChatProvider,
    system_prompt: str,
    start: int,
    batch: list[str],
) -> list[RerankingDocument]:
    """Score one batch, retrying once with the error fed back to the model."""
    user_prompt = f"Evaluate these documents:\n\n{format_documents_for_reranking(batch)}"
    schema = _score_schema(len(batch))
    error: str | None = None

    for attempt in range(2):
        system = system_prompt
        if error is not None:
            system = (
                f"{system_prompt}\n\nYour previous response had an error: {error}\n"
                "Please correct it and return the proper format."
            )
        request = ChatRequest(
            system=system,
            messages=[ChatMessage(role="user", content=user_prompt)],
            temperature=RERANK_TEMPERATURE,
        )
        try:
            response = await provider.complete_structured(request, schema)
            scores = parse_scores(response, len(batch))
        except Exception as e:
            error = str(e)
            logger.info(
                "Rerank batch @%d attempt %d failed: %s", start, attempt + 1, error
            )
            continue
        return [
            RerankingDocument(
                text=text,
                relevance_score=score,
                relevance_reason="Model score",
                index=start + i,
            )
            for i, (text, score) in enumerate(zip(batch, scores, strict=True))
        ]

    logger.warning("Rerank batch @%d failed after retry, using fallback scores", start)
    return _fallback_batch(start, batch)


def select_top_documents_with_threshold(
    docs: list[RerankingDocument],
    target: int,
    min_threshold: float,
) -> tuple[list[RerankingDocument], float]:
    """Pick about ``target`` documents, preferring those at or above ``min_threshold``.

    Returns the selection (sorted by score, descending) and the threshold that
    was actually applied.
    """
    ranked = sorted(docs, key=lambda d: d.relevance_score, reverse=True)
    if not ranked or target <= 0:
        return [], min_threshold

    above = [d for d in ranked if d.relevance_score >= min_threshold]

    if len(above) >= target:
        selected = above[:target]
        cutoff = selected[-1].relevance_score
        at_or_above_cutoff = [d for d in above if d.relevance_score >= cutoff]
        if len(at_or_above_cutoff) > target * 1.5:
            return selected, cutoff
        return at_or_above_cutoff, cutoff

    if above:
        # everything above threshold, topped up with the best of the rest
        combined = ranked[:target]
        return combined, combined[-1].relevance_score

    selected = ranked[:target]
    threshold = selected[-1].relevance_score if selected else min_threshold
    return selected, threshold


async def rerank_documents(
    texts: list[str],
    query: str,
    provider: ChatProvider,
    relevance_threshold: float | None = None,
    target_documents: int | None = None,
) -> RerankResult:
    """Score every text against the query and keep the best ones.

    One failing batch falls back to synthetic scores without affecting the
    others. If reranking fails outright, every input comes back unranked at a
    neutral score.
    """
    if relevance_threshold is None:
        relevance_threshold = settings.relevance_threshold
    if target_documents is None:
        target_documents = settings.rerank_target_documents
    if not texts:
        return RerankResult(reranking_applied=False, documents=[])

    try:
        system_prompt = build_reranking_prompt(query)
        batches = create_batches(texts, settings.rerank_batch_size)
        ranked: list[RerankingDocument] = []
        if len(batches) <= settings.rerank_max_parallel_batches:
            results = await asyncio.gather(
                *(rerank_batch(provider, system_prompt, s, b) for s, b in batches)
            )
            for result in results:
                ranked.extend(result)
        else:
            for start, batch in batches:
                ranked.extend(await rerank_batch(provider, system_prompt, start, batch))

        selected, threshold = select_top_documents_with_threshold(
            ranked, target_documents, relevance_threshold
        )
    except Exception:
        logger.exception("Reranking failed, returning documents unranked")
        return RerankResult(
            reranking_applied=False,
            documents=[
                RerankingDocument(
                    text=text,
                    relevance_score=NEUTRAL_SCORE,
                    relevance_reason=FALLBACK_CALL_REASON,
                    index=i,
                )
                for i, text in enumerate(texts)
            ],
        )

    logger.info(
        "Reranked %d texts in %d batches -> %d selected (threshold=%.1f)",
        len(texts),
        len(batches),
        len(selected),
        threshold,
    )
    return RerankResult(reranking_applied=True, documents=selected, threshold=threshold)
