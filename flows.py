"""AI flows: categorization, bulk categorization, insights and questions.

Each flow renders its prompt, calls the model through ``LLMClient`` and
validates the JSON it gets back against a pydantic model. Anything the model
returns that does not validate is a ``ServiceError``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from rapidfuzz.distance import Levenshtein

import prompts
from config import get_settings
from errors import OversizedInputError, ServiceError
from llm import LLMClient, current_time_tool
from schemas import (
    CATEGORY_SUGGESTIONS,
    AnswerOut,
    BulkCategorizeOut,
    CategorizedTransaction,
    GeneratedInsight,
)

logger = logging.getLogger(__name__)


def normalize_category(raw: str, suggestions: Sequence[str] = CATEGORY_SUGGESTIONS) -> str:
    """Snap a model-produced category onto the suggestion list.

    Exact case-insensitive matches win; otherwise a unique suggestion within
    one edit is used. Anything else is kept as free text.
    """
    name = " ".join(raw.split())
    lowered = name.lower()
    for suggestion in suggestions:
        if suggestion.lower() == lowered:
            return suggestion

    best_distance: Optional[int] = None
    best: list[str] = []
    for suggestion in suggestions:
        dist = int(Levenshtein.distance(lowered, suggestion.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = [suggestion]
        elif dist == best_distance:
            best.append(suggestion)
    if best_distance is not None and best_distance <= 1 and len(best) == 1:
        return best[0]
    return name


class FinanceAI:
    def __init__(self, llm: Optional[LLMClient] = None) -> None:
        self._llm = llm
        self.settings = get_settings()

    @property
    def llm(self) -> LLMClient:
        # Built lazily so that local validation never needs a configured client.
        if self._llm is None:
            self._llm = LLMClient()
        return self._llm

    def categorize_transaction(
        self, text: str, *, timezone: Optional[str] = None
    ) -> CategorizedTransaction:
        user = prompts.render(
            prompts.CATEGORIZE_USER,
            text=text,
            timezone=timezone or self.settings.timezone,
            categories=CATEGORY_SUGGESTIONS,
        )
        data = self.llm.complete_json(
            prompts.CATEGORIZE_SYSTEM,
            user,
            tools=[current_time_tool(timezone or self.settings.timezone)],
            name="categorize_transaction",
        )
        result = self._validate(CategorizedTransaction, data, "categorize_transaction")
        result.category = normalize_category(result.category)
        return result

    def bulk_categorize(
        self, text: str, *, timezone: Optional[str] = None
    ) -> list[CategorizedTransaction]:
        limit = self.settings.bulk_text_max_length
        if len(text) > limit:
            logger.info(f"bulk_categorize_rejected: length={len(text)} limit={limit}")
            raise OversizedInputError(
                "The provided text is too long. Please shorten it and try again.",
                {"text": [f"Text must be at most {limit} characters."]},
            )
        user = prompts.render(
            prompts.BULK_CATEGORIZE_USER,
            text=text,
            timezone=timezone or self.settings.timezone,
            categories=CATEGORY_SUGGESTIONS,
        )
        data = self.llm.complete_json(
            prompts.BULK_CATEGORIZE_SYSTEM,
            user,
            tools=[current_time_tool(timezone or self.settings.timezone)],
            name="bulk_categorize",
        )
        result = self._validate(BulkCategorizeOut, data, "bulk_categorize")
        for item in result.transactions:
            item.category = normalize_category(item.category)
        logger.info(f"bulk_categorize_ok: found={len(result.transactions)}")
        return result.transactions

    def generate_insights(
        self,
        transactions: list[dict[str, Any]],
        previous_insights: list[dict[str, Any]],
    ) -> GeneratedInsight:
        user = prompts.render(
            prompts.INSIGHTS_USER,
            transactions=transactions,
            previous_insights=previous_insights,
            currency=self.settings.currency_symbol,
        )
        data = self.llm.complete_json(
            prompts.INSIGHTS_SYSTEM, user, temperature=0.7, name="generate_insights"
        )
        return self._validate(GeneratedInsight, data, "generate_insights")

    def ask_question(
        self,
        question: str,
        transactions: list[dict[str, Any]],
        insights: list[dict[str, Any]],
    ) -> AnswerOut:
        user = prompts.render(
            prompts.ASK_USER,
            question=question,
            transactions=transactions,
            insights=insights,
            currency=self.settings.currency_symbol,
        )
        data = self.llm.complete_json(
            prompts.ASK_SYSTEM, user, temperature=0.5, name="ask_question"
        )
        return self._validate(AnswerOut, data, "ask_question")

    @staticmethod
    def _validate(model, data: dict[str, Any], flow: str):
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            logger.error(f"llm_output_invalid: flow={flow} errors={exc.error_count()}")
            raise ServiceError("The AI service returned an unparseable result.") from exc
