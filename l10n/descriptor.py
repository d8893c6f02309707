"""Parsing of ``L10N.md`` descriptor files.

A descriptor is a Markdown document whose optional ``+++`` fenced TOML
header declares ``[[translate]]`` directives and ``[llm]`` backend settings.
Everything after the header is free-text context for the translator.
"""
import logging
import os
import tomllib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import jsonschema

from l10n.errors import ConfigurationError
from l10n.frontmatter import TOML_FENCE, UnclosedFrontmatterError, split_frontmatter

logger = logging.getLogger(__name__)

DESCRIPTOR_FILENAME = "L10N.md"

FRONTMATTER_PRESERVE = "preserve"
FRONTMATTER_TRANSLATE = "translate"
FRONTMATTER_MODES = (FRONTMATTER_PRESERVE, FRONTMATTER_TRANSLATE)

_STRING_MAP = {"type": "object", "additionalProperties": {"type": "string"}}
_STRING_LIST = {"type": "array", "items": {"type": "string"}}

_CONNECTION_PROPERTIES = {
    "provider": {"type": "string"},
    "base_url": {"type": "string"},
    "chat_completions_path": {"type": "string"},
    "api_key": {"type": "string"},
    "api_key_env": {"type": "string"},
    "temperature": {"type": "number"},
    "max_tokens": {"type": "integer"},
    "headers": _STRING_MAP,
    "timeout_seconds": {"type": "integer"},
}

AGENT_SCHEMA = {
    "type": "object",
    "properties": {
        "role": {"type": "string"},
        "model": {"type": "string"},
        **_CONNECTION_PROPERTIES,
    },
}

# Unknown keys are tolerated so newer descriptors still load.
DESCRIPTOR_SCHEMA = {
    "type": "object",
    "properties": {
        "llm": {
            "type": "object",
            "properties": {
                "coordinator_model": {"type": "string"},
                "translator_model": {"type": "string"},
                "agent": {"type": "array", "items": AGENT_SCHEMA},
                **_CONNECTION_PROPERTIES,
            },
        },
        "translate": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "source": {"type": "string"},
                    "path": {"type": "string"},
                    "targets": _STRING_LIST,
                    "output": {"type": "string"},
                    "exclude": _STRING_LIST,
                    "preserve": _STRING_LIST,
                    "frontmatter": {"type": "string"},
                    "check_cmd": {"type": "string"},
                    "check_cmds": _STRING_MAP,
                    "retries": {"type": "integer"},
                },
            },
        },
    },
}


@dataclass(frozen=True)
class AgentConfig:
    """Connection and model settings for one backend role."""
    role: str = ""
    provider: str = ""
    base_url: str = ""
    chat_completions_path: str = ""
    api_key: str = ""
    api_key_env: str = ""
    model: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 0


@dataclass(frozen=True)
class LLMSettings:
    """The ``[llm]`` table of one descriptor, or the merge of several."""
    provider: str = ""
    base_url: str = ""
    chat_completions_path: str = ""
    api_key: str = ""
    api_key_env: str = ""
    coordinator_model: str = ""
    translator_model: str = ""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 0
    agents: Tuple[AgentConfig, ...] = ()


@dataclass(frozen=True)
class Directive:
    """One ``[[translate]]`` entry, normalized and tagged with its origin."""
    source: str
    targets: Tuple[str, ...]
    output: str
    exclude: Tuple[str, ...] = ()
    preserve: Tuple[str, ...] = ()
    frontmatter: str = FRONTMATTER_PRESERVE
    check_cmd: str = ""
    check_cmds: Dict[str, str] = field(default_factory=dict)
    retries: Optional[int] = None
    origin_path: str = ""
    origin_dir: str = ""
    origin_depth: int = 0
    index: int = 0

    @property
    def precedence(self) -> Tuple[int, int]:
        """Deeper descriptors win; within one descriptor, later entries win."""
        return self.origin_depth, self.index


@dataclass(frozen=True)
class DescriptorFile:
    path: str
    dir: str
    depth: int
    body: str
    directives: Tuple[Directive, ...]
    llm: LLMSettings


def split_descriptor(contents: str) -> Tuple[Optional[str], str]:
    """
    Split descriptor text into its TOML header and free-text body.

    Returns:
        ``(header, body)``; header is None when the document has no ``+++`` fence.

    Raises:
        ConfigurationError: If the opening fence is never closed.
    """
    try:
        frontmatter = split_frontmatter(contents, (TOML_FENCE,))
    except UnclosedFrontmatterError as exc:
        raise ConfigurationError(str(exc)) from exc
    if frontmatter is None:
        return None, contents
    return frontmatter.header, frontmatter.body


def _agent_from_table(table: Dict[str, Any]) -> AgentConfig:
    return AgentConfig(
        role=table.get("role", ""),
        provider=table.get("provider", ""),
        base_url=table.get("base_url", ""),
        chat_completions_path=table.get("chat_completions_path", ""),
        api_key=table.get("api_key", ""),
        api_key_env=table.get("api_key_env", ""),
        model=table.get("model", ""),
        temperature=table.get("temperature"),
        max_tokens=table.get("max_tokens"),
        headers=dict(table.get("headers") or {}),
        timeout_seconds=table.get("timeout_seconds", 0),
    )


def _llm_from_table(table: Dict[str, Any]) -> LLMSettings:
    return LLMSettings(
        provider=table.get("provider", ""),
        base_url=table.get("base_url", ""),
        chat_completions_path=table.get("chat_completions_path", ""),
        api_key=table.get("api_key", ""),
        api_key_env=table.get("api_key_env", ""),
        coordinator_model=table.get("coordinator_model", ""),
        translator_model=table.get("translator_model", ""),
        temperature=table.get("temperature"),
        max_tokens=table.get("max_tokens"),
        headers=dict(table.get("headers") or {}),
        timeout_seconds=table.get("timeout_seconds", 0),
        agents=tuple(_agent_from_table(agent) for agent in table.get("agent") or []),
    )


def _directive_from_table(table: Dict[str, Any], origin_path: str, origin_dir: str,
                          depth: int, index: int) -> Directive:
    source = table.get("source", "")
    if not source.strip():
        source = table.get("path", "")
    return Directive(
        source=source,
        targets=tuple(table.get("targets") or ()),
        output=table.get("output", ""),
        exclude=tuple(table.get("exclude") or ()),
        preserve=tuple(table.get("preserve") or ()),
        frontmatter=table.get("frontmatter") or FRONTMATTER_PRESERVE,
        check_cmd=table.get("check_cmd", ""),
        check_cmds=dict(table.get("check_cmds") or {}),
        retries=table.get("retries"),
        origin_path=origin_path,
        origin_dir=origin_dir,
        origin_depth=depth,
        index=index,
    )


def validate_directive(directive: Directive) -> None:
    """
    Check the fields every directive requires.

    Raises:
        ConfigurationError: If source, targets or output is empty, or the
            frontmatter mode is not recognized.
    """
    if not directive.source.strip():
        raise ConfigurationError("translate entry requires source/path")
    if not directive.targets:
        raise ConfigurationError(f"translate entry {directive.source!r} has no targets")
    if not directive.output.strip():
        raise ConfigurationError(f"translate entry {directive.source!r} has no output")
    if directive.frontmatter not in FRONTMATTER_MODES:
        raise ConfigurationError(
            f"translate entry {directive.source!r} has invalid frontmatter mode {directive.frontmatter!r}"
        )


def parse_descriptor_text(contents: str, path: str, depth: int = 0) -> DescriptorFile:
    """
    Parse descriptor text that was read from ``path``.

    Args:
        contents: The descriptor document.
        path: The descriptor's path; its directory anchors the directive globs.
        depth: Path-segment count from the project root to the descriptor's directory.

    Returns:
        DescriptorFile: The parsed, normalized and validated descriptor.

    Raises:
        ConfigurationError: If the header is malformed or a directive is invalid.
    """
    abs_path = os.path.abspath(path)
    origin_dir = os.path.dirname(abs_path)

    try:
        header, body = split_descriptor(contents)
    except ConfigurationError as exc:
        raise ConfigurationError(f"{abs_path}: {exc}") from exc

    table: Dict[str, Any] = {}
    if header is not None:
        try:
            table = tomllib.loads(header)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"{abs_path}: parse frontmatter: {exc}") from exc
        try:
            jsonschema.validate(instance=table, schema=DESCRIPTOR_SCHEMA)
        except jsonschema.ValidationError as exc:
            location = ".".join(str(part) for part in exc.absolute_path) or "<root>"
            raise ConfigurationError(f"{abs_path}: invalid value at {location}: {exc.message}") from exc

    directives: List[Directive] = []
    for index, entry in enumerate(table.get("translate") or []):
        directive = _directive_from_table(entry, abs_path, origin_dir, depth, index)
        try:
            validate_directive(directive)
        except ConfigurationError as exc:
            raise ConfigurationError(f"{abs_path}: {exc}") from exc
        directives.append(directive)

    logger.debug("Parsed descriptor '%s' with %d directive(s).", abs_path, len(directives))
    return DescriptorFile(
        path=abs_path,
        dir=origin_dir,
        depth=depth,
        body=body,
        directives=tuple(directives),
        llm=_llm_from_table(table.get("llm") or {}),
    )


def parse_descriptor(path: str, depth: int = 0) -> DescriptorFile:
    """Read and parse the descriptor file at ``path``."""
    with open(path, "rb") as f:
        data = f.read()
    try:
        contents = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigurationError(f"{os.path.abspath(path)}: not valid UTF-8: {exc}") from exc
    return parse_descriptor_text(contents, path, depth)
