"""
Response Engine — LLM-powered reply generation.

Takes the conversation transcript plus business and milestone context and
asks Claude or OpenAI for a structured reply:

    {"text": ..., "lead_score": 1-7, "intent": ..., "next_action": ..., "confidence": 0-1}

Every failure mode (no client, provider error, unparseable or invalid
output) surfaces as GenerationError; there is no template fallback.
"""
from __future__ import annotations

import abc
import json
import structlog
from typing import Any, Optional

from pydantic import ValidationError

from config.settings import LLMConfig, get_settings
from core.errors import GenerationError
from models.schemas import (
    ChannelType, GenerationContext, GenerationResult, LEAD_SCORING_STEPS,
)

logger = structlog.get_logger()


class ResponseGenerator(abc.ABC):
    """The generation collaborator the orchestrator depends on."""

    @abc.abstractmethod
    async def generate(self, context: GenerationContext) -> GenerationResult:
        ...


def parse_generation_output(raw: str) -> GenerationResult:
    """Parse a JSON reply (bare or fenced) into a validated GenerationResult."""
    result = (raw or "").strip()
    if not result:
        raise GenerationError("empty model output")
    if result.startswith("```"):
        result = result.split("```")[1].strip()
        if result.startswith("json"):
            result = result[4:].strip()
    try:
        data = json.loads(result)
    except json.JSONDecodeError as e:
        raise GenerationError("model output is not JSON", cause=e) from e
    if not isinstance(data, dict):
        raise GenerationError("model output is not a JSON object")
    try:
        return GenerationResult.model_validate(data)
    except ValidationError as e:
        raise GenerationError("model output failed validation", cause=e) from e


class ResponseEngine(ResponseGenerator):
    """
    Generates replies using Claude or OpenAI.
    Adapts tone and length based on the channel being used.
    """

    def __init__(self, llm_config: Optional[LLMConfig] = None):
        self._llm = llm_config or get_settings().llm
        self._client = None
        self._provider = self._llm.provider

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    async def _get_client(self):
        if self._client is None:
            try:
                if self.is_openai:
                    from openai import AsyncOpenAI
                    self._client = AsyncOpenAI(api_key=self._llm.api_key)
                else:
                    import anthropic
                    self._client = anthropic.AsyncAnthropic(api_key=self._llm.api_key)
                logger.info("llm_client_initialized", provider=self._provider, model=self._llm.model)
            except Exception as e:
                logger.error("llm_client_init_failed", provider=self._provider, error=str(e))
                self._client = None
        return self._client

    async def _call_llm(self, system: str, messages: list[dict[str, str]]) -> str:
        """Unified LLM call that handles both Anthropic and OpenAI APIs."""
        client = await self._get_client()
        if not client:
            raise GenerationError(f"no {self._provider} client available")

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            response = await client.chat.completions.create(
                model=self._llm.model,
                max_tokens=self._llm.max_tokens,
                temperature=self._llm.temperature,
                messages=[{"role": "system", "content": system}] + messages,
                response_format={"type": "json_object"},
            )
            return response.choices[0].message.content or ""

        # Anthropic: system prompt is a separate parameter
        response = await client.messages.create(
            model=self._llm.model,
            max_tokens=self._llm.max_tokens,
            temperature=self._llm.temperature,
            system=system,
            messages=messages,
        )
        return response.content[0].text

    async def generate(self, context: GenerationContext) -> GenerationResult:
        system_prompt = self._build_system_prompt(context)
        messages = self._build_messages(context)
        try:
            raw = await self._call_llm(system=system_prompt, messages=messages)
        except GenerationError:
            raise
        except Exception as e:
            logger.error("llm_generation_failed",
                         conversation_id=context.conversation_id, error=str(e))
            raise GenerationError(f"{self._provider} call failed: {e}", cause=e) from e

        result = parse_generation_output(raw)
        logger.info("reply_generated",
                    conversation_id=context.conversation_id,
                    lead_score=result.lead_score,
                    intent=result.intent,
                    confidence=result.confidence)
        return result

    # ── Prompt building ───────────────────────────────────────

    def _build_system_prompt(self, context: GenerationContext) -> str:
        channel_instructions = {
            ChannelType.INSTAGRAM: "This is an Instagram DM. Keep replies SHORT (1-3 sentences), friendly, no markdown.",
            ChannelType.GMAIL: "This is an email reply in an existing thread. Professional tone, a short greeting and sign-off.",
        }
        steps = "\n".join(f"  {n}. {name}" for n, name in LEAD_SCORING_STEPS.items())
        milestone = context.milestone_target.value if context.milestone_target else "none"
        if context.milestone_custom_target:
            milestone = f"{milestone} ({context.milestone_custom_target})"

        template = self._llm.system_prompt_template or self._default_system_prompt()
        return template.replace(
            "{{business_name}}", context.business_name
        ).replace(
            "{{contact_name}}", context.contact_name or "the contact"
        ).replace(
            "{{lead_steps}}", steps
        ).replace(
            "{{current_score}}", str(context.current_lead_score)
        ).replace(
            "{{milestone_target}}", milestone
        ).replace(
            "{{milestone_status}}", context.milestone_status.value
        ) + f"\n\nCHANNEL: {context.channel.value}\n{channel_instructions.get(context.channel, '')}"

    def _build_messages(self, context: GenerationContext) -> list[dict[str, str]]:
        """Transcript as alternating turns, ending with the consolidated batch."""
        messages: list[dict[str, Any]] = []
        for entry in context.transcript:
            role = "assistant" if entry.role == "assistant" else "user"
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"] += f"\n{entry.content}"
            else:
                messages.append({"role": role, "content": entry.content})

        if not messages or messages[-1]["role"] != "user":
            messages.append({"role": "user", "content": context.latest_message or "[no text]"})
        if messages[0]["role"] == "assistant":
            messages.insert(0, {"role": "user", "content": "[Conversation started]"})
        return messages

    def _default_system_prompt(self) -> str:
        return """You are the messaging assistant for {{business_name}}, talking with {{contact_name}}.

Your goal is to move the conversation towards the milestone: {{milestone_target}} (status: {{milestone_status}}).

Lead scoring steps:
{{lead_steps}}
Current lead score: {{current_score}}

GUIDELINES:
- Answer what the contact asked, then guide them one step closer to the milestone
- Never invent prices, dates or links you were not given
- Do not repeat the business introduction if it is already in the conversation

Respond with ONLY a JSON object:
{"text": "<reply to send>", "lead_score": <1-7>, "intent": "<short label>",
 "next_action": "<short label>", "confidence": <0.0-1.0>}"""
