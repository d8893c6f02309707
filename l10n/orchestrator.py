"""Per-pair translation: brief, attempt, validate, retry."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from l10n.descriptor import FRONTMATTER_PRESERVE, AgentConfig
from l10n.errors import ConfigurationError, GenerationError, ToolError, TranslationFailed
from l10n.frontmatter import UnclosedFrontmatterError, split_frontmatter
from l10n.llm_client import ChatMessage, LLMClient
from l10n.plan import Format
from l10n.validation import TOOLS_SUMMARY, ValidationOptions, validate

logger = logging.getLogger(__name__)

CODE_FENCE = "```"

COORDINATOR_SYSTEM_PROMPT = "You coordinate translations and produce concise briefs."

COORDINATOR_PROMPT = """You are a localization coordinator.
Create a short translation brief for the translator.
The brief must be plain text and under 12 lines.

Target language: {lang}
Format: {format}
Preserve: {preserve}
Frontmatter mode: {frontmatter}
Tools: {tools}

Context:
{context}
"""


@dataclass
class TranslationRequest:
    """Everything needed to translate one source into one language."""
    source_path: str
    source: str
    target_lang: str
    format: Format
    context: str
    coordinator: AgentConfig
    translator: AgentConfig
    root: str
    retries: int
    preserve: Tuple[str, ...] = ()
    frontmatter: str = FRONTMATTER_PRESERVE
    check_cmd: str = ""
    check_cmds: Dict[str, str] = field(default_factory=dict)
    check_cmd_override: str = ""
    state_dir: str = ".l10n"

    @property
    def validation_options(self) -> ValidationOptions:
        return ValidationOptions(
            preserve=self.preserve,
            check_cmd=self.check_cmd,
            check_cmds=self.check_cmds,
            check_cmd_override=self.check_cmd_override,
        )


def resolve_retries(run_override: Optional[int], directive_retries: Optional[int], default: int) -> int:
    """A non-negative run override wins, then the directive's value, then ``default``."""
    if run_override is not None and run_override >= 0:
        return run_override
    if directive_retries is not None:
        return max(directive_retries, 0)
    return max(default, 0)


class TranslationAttempts:
    """
    Bounded attempt counter for one pair.

    ``max_attempts`` is one plus the retry count. Once ``succeed`` is called or
    every attempt has failed, no further attempt may start.
    """

    def __init__(self, retries: int):
        self.max_attempts = 1 + max(retries, 0)
        self.attempt = 0
        self.last_error: Optional[Exception] = None
        self.succeeded = False

    @property
    def can_attempt(self) -> bool:
        return not self.succeeded and self.attempt < self.max_attempts

    @property
    def exhausted(self) -> bool:
        return not self.succeeded and self.attempt >= self.max_attempts

    def start(self) -> int:
        if not self.can_attempt:
            raise RuntimeError("no attempts left")
        self.attempt += 1
        return self.attempt

    def fail(self, error: Exception) -> None:
        self.last_error = error

    def succeed(self) -> None:
        self.succeeded = True


def strip_code_fence(content: str) -> str:
    """
    Remove one code fence wrapping the whole response.

    The first line may carry a language tag (```json); the last line must be
    exactly the closing fence. Anything else is returned unchanged.
    """
    trimmed = content.strip()
    if not trimmed.startswith(CODE_FENCE):
        return content
    lines = trimmed.split("\n")
    if len(lines) < 2:
        return content
    if lines[-1].strip() != CODE_FENCE:
        return content
    return "\n".join(lines[1:-1])


def split_markdown_frontmatter(contents: str) -> Tuple[str, str]:
    """
    Returns:
        ``(frontmatter, body)`` where frontmatter includes both fence lines, or
        ``("", contents)`` when there is no complete frontmatter block.
    """
    try:
        frontmatter = split_frontmatter(contents)
    except UnclosedFrontmatterError:
        return "", contents
    if frontmatter is None:
        return "", contents
    return frontmatter.fenced, frontmatter.body


def default_brief(request: TranslationRequest) -> str:
    lines = [
        "Translate the content faithfully and naturally.",
        "Preserve code blocks, inline code, URLs, and placeholders.",
        "Keep formatting, lists, and headings intact.",
        "Return only the translated content.",
    ]
    if request.format.is_structured:
        lines.append(f"Return valid {request.format.value} only. Do not wrap in markdown fences.")
    if request.frontmatter == FRONTMATTER_PRESERVE:
        lines.append("Frontmatter is preserved separately; do not add new frontmatter.")
    lines.append(f"Tools run after translation: {TOOLS_SUMMARY}.")
    return "\n".join(lines)


def retry_feedback(error: Exception) -> str:
    return f"Previous output failed validation: {error}\nReturn a corrected full translation."


class Translator:
    """Drives the coordinator and translator roles for one pair at a time."""

    def __init__(self, client: LLMClient):
        self.client = client

    async def build_brief(self, request: TranslationRequest) -> str:
        model = request.coordinator.model.strip()
        if not model:
            return default_brief(request)

        prompt = COORDINATOR_PROMPT.format(
            lang=request.target_lang,
            format=request.format.value,
            preserve=", ".join(request.preserve),
            frontmatter=request.frontmatter,
            tools=TOOLS_SUMMARY,
            context=request.context,
        )
        response = await self.client.send(request.coordinator, model, [
            ChatMessage(role="system", content=COORDINATOR_SYSTEM_PROMPT),
            ChatMessage(role="user", content=prompt),
        ])
        return response.strip()

    async def translate_once(self, request: TranslationRequest, brief: str, content: str,
                             last_error: Optional[Exception]) -> str:
        model = request.translator.model.strip()
        user = f"Translate to {request.target_lang}.\n\nContext:\n{request.context}\n\nSource:\n{content}"
        if last_error is not None:
            user += "\n\n" + retry_feedback(last_error)

        response = await self.client.send(request.translator, model, [
            ChatMessage(role="system", content=f"You are a translation engine. Follow this brief:\n{brief}"),
            ChatMessage(role="user", content=user),
        ])
        return response.rstrip("\n")

    def assemble(self, request: TranslationRequest, translation: str, frontmatter: str) -> str:
        final = translation
        if request.format.is_structured:
            final = strip_code_fence(final)
        if frontmatter:
            final = f"{frontmatter}\n{final}" if final.strip() else f"{frontmatter}\n"
        return final

    async def translate(self, request: TranslationRequest) -> str:
        """
        Translate one source into one language.

        Returns:
            The validated translation.

        Raises:
            ConfigurationError: If the translator has no model. No attempt is made.
            TranslationFailed: When the brief cannot be built or every attempt
                failed; carries the last error.
        """
        if not request.translator.model.strip():
            raise ConfigurationError(f"{request.source_path}: translator model is required")

        content = request.source
        frontmatter = ""
        if request.format == Format.MARKDOWN and request.frontmatter == FRONTMATTER_PRESERVE:
            frontmatter, content = split_markdown_frontmatter(request.source)

        try:
            brief = await self.build_brief(request)
        except (GenerationError, asyncio.TimeoutError) as exc:
            logger.error("Coordinator failed for '%s' (%s): %s", request.source_path, request.target_lang, exc)
            raise TranslationFailed(request.source_path, request.target_lang, exc, 0) from exc

        attempts = TranslationAttempts(request.retries)
        while attempts.can_attempt:
            attempt = attempts.start()
            logger.debug("Translating '%s' to %s (attempt %d/%d).",
                         request.source_path, request.target_lang, attempt, attempts.max_attempts)
            try:
                translation = await self.translate_once(request, brief, content, attempts.last_error)
            except (GenerationError, asyncio.TimeoutError) as exc:
                logger.warning("Attempt %d/%d for '%s' (%s) failed: %s",
                               attempt, attempts.max_attempts, request.source_path, request.target_lang, exc)
                attempts.fail(exc)
                continue

            final = self.assemble(request, translation, frontmatter)
            try:
                validate(request.format, final, request.source, request.validation_options,
                         request.root, request.state_dir)
            except ToolError as exc:
                logger.warning("Attempt %d/%d for '%s' (%s) rejected: %s",
                               attempt, attempts.max_attempts, request.source_path, request.target_lang, exc)
                attempts.fail(exc)
                continue

            attempts.succeed()
            return final

        logger.error("Translation of '%s' to %s failed after %d attempt(s).",
                     request.source_path, request.target_lang, attempts.attempt)
        raise TranslationFailed(request.source_path, request.target_lang, attempts.last_error, attempts.attempt)
