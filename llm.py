"""Thin wrapper over the OpenAI chat-completions API.

Every call asks for a JSON object and may let the model invoke local function
tools (for example the current-time lookup used to resolve relative dates).
Tool rounds are bounded; failures of any kind surface as ``ServiceError``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Optional

from openai import OpenAI, OpenAIError

from config import get_settings
from errors import ServiceError
from timezones import current_time_iso, resolve_timezone

logger = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    parameters: dict[str, Any]
    func: Callable[..., dict[str, Any]]

    def spec(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def current_time_tool(default_timezone: Optional[str]) -> Tool:
    def _run(timezone: Optional[str] = None) -> dict[str, Any]:
        zone = resolve_timezone(timezone or default_timezone)
        current = current_time_iso(zone.key)
        logger.info(f"tool_get_current_time: timezone={zone.key} now={current}")
        return {"currentTime": current, "timezone": zone.key}

    return Tool(
        name="get_current_time",
        description=(
            "Gets the current date and time. Use this to resolve relative times "
            'like "today", "yesterday" or "now".'
        ),
        parameters={
            "type": "object",
            "properties": {
                "timezone": {
                    "type": "string",
                    "description": "IANA timezone identifier, e.g. Asia/Kolkata. Defaults to the user's timezone.",
                }
            },
            "required": [],
        },
        func=_run,
    )


def _decode_json(content: Optional[str]) -> dict[str, Any]:
    if not content or not content.strip():
        raise ServiceError("The AI service returned an empty response.")
    text = _JSON_FENCE_RE.sub("", content).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ServiceError("The AI service returned an unparseable response.") from exc
    if not isinstance(data, dict):
        raise ServiceError("The AI service returned an unexpected response shape.")
    return data


class LLMClient:
    def __init__(
        self,
        client: Optional[Any] = None,
        *,
        model: Optional[str] = None,
        max_tool_rounds: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.model = model or settings.openai_model
        self.max_tool_rounds = (
            settings.llm_max_tool_rounds if max_tool_rounds is None else max_tool_rounds
        )
        if client is None:
            if not settings.openai_api_key:
                raise ServiceError("The AI service is not configured.")
            client = OpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.openai_timeout_secs,
            )
        self.client = client

    def complete_json(
        self,
        system: str,
        user: str,
        *,
        tools: Optional[list[Tool]] = None,
        temperature: float = 0.2,
        name: str = "completion",
    ) -> dict[str, Any]:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        registry = {tool.name: tool for tool in tools or []}

        for round_index in range(self.max_tool_rounds + 1):
            kwargs: dict[str, Any] = {
                "model": self.model,
                "messages": messages,
                "temperature": temperature,
                "response_format": {"type": "json_object"},
            }
            # On the last round tools are withheld so the model must answer.
            if registry and round_index < self.max_tool_rounds:
                kwargs["tools"] = [tool.spec() for tool in registry.values()]
            try:
                response = self.client.chat.completions.create(**kwargs)
            except OpenAIError as exc:
                logger.error(f"llm_call_failed: flow={name} error={exc}")
                raise ServiceError(f"The AI service request failed: {exc}") from exc

            message = response.choices[0].message
            tool_calls = getattr(message, "tool_calls", None) or []
            if not tool_calls:
                logger.info(f"llm_call_ok: flow={name} rounds={round_index + 1}")
                return _decode_json(message.content)

            messages.append(
                {
                    "role": "assistant",
                    "content": message.content,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.function.name,
                                "arguments": call.function.arguments,
                            },
                        }
                        for call in tool_calls
                    ],
                }
            )
            for call in tool_calls:
                result = self._run_tool(registry, call.function.name, call.function.arguments)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result),
                    }
                )

        raise ServiceError("The AI service did not produce an answer.")

    @staticmethod
    def _run_tool(registry: dict[str, Tool], name: str, arguments: Optional[str]) -> dict[str, Any]:
        tool = registry.get(name)
        if tool is None:
            logger.warning(f"llm_unknown_tool: name={name}")
            return {"error": f"Unknown tool: {name}"}
        try:
            kwargs = json.loads(arguments) if arguments else {}
        except json.JSONDecodeError:
            kwargs = {}
        if not isinstance(kwargs, dict):
            kwargs = {}
        allowed = set(tool.parameters.get("properties", {}))
        try:
            return tool.func(**{k: v for k, v in kwargs.items() if k in allowed})
        except Exception as exc:
            # Reported back to the model so it can answer without the tool.
            logger.warning(f"llm_tool_failed: name={name} error={exc!r}")
            return {"error": f"Tool {name} failed: {exc}"}
