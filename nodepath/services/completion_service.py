"""Completion call for prompt nodes: build the request, parse the reply, dispatch it."""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from nodepath.config import settings
from nodepath.logging_config import get_logger
from nodepath.services.flow_graph import PromptNode
from nodepath.services.llm import LLMError, LLMProvider, OpenAICompatibleProvider
from nodepath.services.pass_context import PassContext
from nodepath.services.response_parser import (
    CompletionReply,
    OutboundSegment,
    ResponseParser,
    format_log_entries,
    group_parts,
)
from nodepath.services.result import ErrorCode, Result

logger = get_logger("completion_service")

TEMPERATURE = 0.67
TOP_P = 1.0
REPETITION_PENALTY = 1.0

RESPONSE_FORMAT_SPEC = (
    "### Instructions:\n"
    "1. If the current stage is null or undefined, default to the first stage.\n"
    "2. Always analyze the user's input to determine the appropriate stage. "
    "If the input context is unclear, guide the user within the default stage context.\n"
    "3. Follow all rules and steps strictly. Do not skip or ignore any rules or instructions.\n"
    "4. **Do not repeat the same sentences or phrases that have been used in the recent conversation history.**\n"
    '5. If the input contains the phrase "I want this section in add response format [onemessage]":\n'
    "   - Add the `Jenis` field with the value `onemessage` to each text item.\n"
    "   - Only `text` items in the `Response` array carry the `Jenis` field.\n"
    "   - If the directive is not present, omit the `Jenis` field entirely.\n\n"
    "### Response Format:\n"
    "{\n"
    '  "Stage": "[Stage]",\n'
    '  "Response": [\n'
    '    {"type": "text", "Jenis": "onemessage", "content": "First response message."},\n'
    '    {"type": "image", "content": "https://example.com/image1.jpg"},\n'
    '    {"type": "text", "Jenis": "onemessage", "content": "Second response message."}\n'
    "  ]\n"
    "}\n\n"
    "### Important Rules:\n"
    "1. Include the `Stage` field in every response. If the stage is unclear, use the first stage.\n"
    "2. Split long answers into several short `text` items.\n"
    "3. Give every image its own `image` item. Non-text items never carry `Jenis`.\n"
)

STRICT_JSON_REMINDER = (
    "\n\nYour previous response was NOT valid JSON. "
    "Respond with ONLY a JSON object starting with { and ending with }. "
    'Example: {"Stage": "Problem Identification", "Response": [{"type": "text", "content": "..."}]}'
)


@dataclass(frozen=True)
class CompletionTarget:
    url: str
    model: str
    api_key: str


def _usable_device_key(api_key: Optional[str]) -> bool:
    return bool(api_key) and not api_key.startswith("sk-test")


def resolve_completion_target(device_id: str, device=None) -> CompletionTarget:
    """Endpoint, model and credential for a device.

    A short list of special devices always goes to OpenAI with a fixed model
    and key; every other device uses OpenRouter with the model configured on
    the device and the device key (or the shared default key).
    """
    if device_id in settings.special_device_ids:
        return CompletionTarget(
            url=settings.openai_api_url,
            model=settings.special_device_model,
            api_key=settings.openai_api_key,
        )

    device_key = getattr(device, "api_key", None)
    return CompletionTarget(
        url=settings.openrouter_api_url,
        model=getattr(device, "api_key_option", None) or "",
        api_key=device_key if _usable_device_key(device_key) else settings.openrouter_default_key,
    )


def build_system_prompt(node_prompt: str) -> str:
    return f"{node_prompt}\n\n{RESPONSE_FORMAT_SPEC}"


def build_completion_messages(system_prompt: str, conv_last: Optional[str], user_input: str) -> list[dict]:
    last = conv_last or ""
    if last == "null":
        last = ""
    return [
        {"role": "system", "content": system_prompt},
        {"role": "assistant", "content": last},
        {"role": "user", "content": user_input or ""},
    ]


def build_provider(target: CompletionTarget) -> LLMProvider:
    return OpenAICompatibleProvider(
        api_key=target.api_key,
        base_url=target.url,
        default_model=target.model,
        timeout_seconds=settings.completion_timeout_seconds,
        max_attempts=settings.completion_transport_attempts,
        retry_delay_seconds=settings.completion_retry_delay_seconds,
    )


def append_log(conv_last: Optional[str], entries: list[str]) -> str:
    existing = conv_last if conv_last and conv_last != "null" else ""
    lines = [existing] if existing else []
    lines.extend(entries)
    return "\n".join(lines)


class CompletionResponseProcessor:
    def __init__(
        self,
        provider_factory: Callable[[CompletionTarget], LLMProvider] = build_provider,
        parser: Optional[ResponseParser] = None,
        format_retries: Optional[int] = None,
        budget_seconds: Optional[float] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.provider_factory = provider_factory
        self.parser = parser or ResponseParser(default_stage=settings.default_stage)
        self.format_retries = settings.completion_format_retries if format_retries is None else format_retries
        self.budget_seconds = settings.completion_budget_seconds if budget_seconds is None else budget_seconds
        self.monotonic = monotonic

    def generate_and_dispatch(self, conversation, node: PromptNode, ctx: PassContext) -> Result[CompletionReply]:
        """Call the completion endpoint for ``node`` and send the reply.

        Nothing is sent unless the reply parses; on any failure the
        conversation row is left untouched. All attempts, format and transport
        retries included, share one ``budget_seconds`` deadline.
        """
        log_context = {"phone": conversation.phone_number, "device_id": conversation.device_id, "node_id": node.id}

        if not node.system_prompt.strip():
            logger.error("Prompt node has no system prompt", extra={"context": log_context})
            return Result.failure(f"No prompt configured on node {node.id}", ErrorCode.PROMPT_NOT_CONFIGURED)

        target = resolve_completion_target(conversation.device_id, ctx.device)
        if not target.model:
            logger.error("No completion model configured for device", extra={"context": log_context})
            return Result.failure("No completion model configured", ErrorCode.UPSTREAM_CALL_FAILED)

        provider = self.provider_factory(target)
        user_input = ctx.user_input or conversation.conv_current or ""
        system_prompt = build_system_prompt(node.system_prompt)
        messages = build_completion_messages(system_prompt, conversation.conv_last, user_input)

        deadline = self.monotonic() + self.budget_seconds
        parsed: Result[CompletionReply] = Result.failure("Completion not attempted", ErrorCode.RESPONSE_PARSE_FAILED)
        for attempt in range(self.format_retries + 1):
            try:
                response = provider.generate(
                    messages,
                    model=target.model,
                    temperature=TEMPERATURE,
                    top_p=TOP_P,
                    repetition_penalty=REPETITION_PENALTY,
                    deadline=deadline,
                )
            except LLMError as exc:
                logger.error(
                    "Completion call failed",
                    extra={"context": {**log_context, "error": str(exc), "status_code": exc.status_code}},
                )
                return Result.failure(str(exc), ErrorCode.UPSTREAM_CALL_FAILED)

            parsed = self.parser.parse(response.content)
            if parsed.ok:
                break
            logger.warning(
                "Completion reply unusable, retrying with stricter prompt",
                extra={"context": {**log_context, "attempt": attempt + 1}},
            )
            messages = [{"role": "system", "content": system_prompt + STRICT_JSON_REMINDER}, *messages[1:]]

        if not parsed.ok:
            return parsed

        reply = parsed.value
        segments = group_parts(reply.parts)
        if not segments:
            logger.error("Completion reply has no deliverable parts", extra={"context": log_context})
            return Result.failure("Completion reply has no deliverable parts", ErrorCode.RESPONSE_PARSE_FAILED)

        self.dispatch(conversation, reply, segments, user_input, ctx)
        return Result.success(reply)

    def dispatch(
        self,
        conversation,
        reply: CompletionReply,
        segments: list[OutboundSegment],
        user_input: str,
        ctx: PassContext,
    ) -> None:
        for segment in segments:
            if segment.is_media:
                ctx.deliver(media_url=segment.content)
            else:
                ctx.deliver(text=segment.content)

        entries = [f"USER: {user_input}"] if user_input else []
        entries.extend(format_log_entries(segments))
        conversation.conv_last = append_log(conversation.conv_last, entries)
        conversation.conv_current = None
        if reply.stage:
            conversation.stage = reply.stage
        conversation.last_ai_call_at = ctx.now

        logger.info(
            "Completion reply dispatched",
            extra={
                "context": {
                    "phone": conversation.phone_number,
                    "device_id": conversation.device_id,
                    "segments": len(segments),
                    "stage": reply.stage,
                }
            },
        )
