"""Resolution of descriptor files into per-source translation plans."""
import glob
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from l10n.backend_config import merge_llm, resolve_agents
from l10n.descriptor import (
    DESCRIPTOR_FILENAME,
    AgentConfig,
    DescriptorFile,
    Directive,
    LLMSettings,
    parse_descriptor,
    split_descriptor,
)
from l10n.errors import ConfigurationError, ResolutionError

logger = logging.getLogger(__name__)

LANG_CONTEXT_DIRNAME = "L10N"
GLOB_WILDCARDS = "*?["


class Format(str, Enum):
    MARKDOWN = "markdown"
    JSON = "json"
    YAML = "yaml"
    PO = "po"
    TEXT = "text"

    @property
    def is_structured(self) -> bool:
        return self in (Format.JSON, Format.YAML, Format.PO)


_EXTENSION_FORMATS = {
    "md": Format.MARKDOWN,
    "markdown": Format.MARKDOWN,
    "json": Format.JSON,
    "yaml": Format.YAML,
    "yml": Format.YAML,
    "po": Format.PO,
}


def detect_format(path: str) -> Format:
    """Map a file extension to the format used for validation."""
    _, ext = os.path.splitext(path)
    return _EXTENSION_FORMATS.get(ext.lstrip(".").lower(), Format.TEXT)


@dataclass(frozen=True)
class OutputPlan:
    lang: str
    output_path: str


@dataclass(frozen=True)
class SourcePlan:
    """Everything needed to translate one source file into its target languages."""
    source_path: str
    abs_path: str
    base_path: str
    rel_path: str
    format: Format
    directive: Directive
    context_bodies: Tuple[str, ...]
    lang_context_bodies: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    context_paths: Tuple[str, ...] = ()
    coordinator: AgentConfig = field(default_factory=AgentConfig)
    translator: AgentConfig = field(default_factory=AgentConfig)
    outputs: Tuple[OutputPlan, ...] = ()

    def context_parts_for(self, lang: str) -> List[str]:
        """General context followed by the language's own context parts."""
        return list(self.context_bodies) + list(self.lang_context_bodies.get(lang, ()))

    def context_for(self, lang: str) -> str:
        return "\n\n".join(self.context_parts_for(lang))

    def output_for(self, lang: str) -> Optional[OutputPlan]:
        for output in self.outputs:
            if output.lang == lang:
                return output
        return None


def find_root(start: str) -> str:
    """Walk up from ``start`` to the nearest directory holding ``.git``; default to ``start``."""
    start = os.path.abspath(start)
    current = start
    while True:
        if os.path.exists(os.path.join(current, ".git")):
            return current
        parent = os.path.dirname(current)
        if parent == current:
            return start
        current = parent


def _depth(root: str, directory: str) -> int:
    rel_dir = os.path.relpath(directory, root)
    if rel_dir == os.curdir:
        return 0
    return len(rel_dir.split(os.sep))


def discover_descriptors(root: str) -> List[DescriptorFile]:
    """
    Find and parse every descriptor file below ``root``.

    Hidden directories, including the ``.l10n`` state directory, are not searched.

    Returns:
        Descriptors sorted by depth, then path.
    """
    root = os.path.abspath(root)
    found: List[Tuple[int, str]] = []

    def _raise(exc: OSError):
        raise ResolutionError(f"walk {exc.filename}: {exc.strerror}") from exc

    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        if DESCRIPTOR_FILENAME in filenames:
            found.append((_depth(root, dirpath), os.path.join(dirpath, DESCRIPTOR_FILENAME)))

    found.sort()
    descriptors = []
    for depth, path in found:
        try:
            descriptors.append(parse_descriptor(path, depth))
        except OSError as exc:
            raise ResolutionError(f"read {path}: {exc}") from exc
    logger.debug("Discovered %d descriptor file(s) under '%s'.", len(descriptors), root)
    return descriptors


def glob_base(pattern: str) -> str:
    """Directory part of the literal prefix before the first wildcard."""
    positions = [pattern.find(ch) for ch in GLOB_WILDCARDS if ch in pattern]
    if not positions:
        return os.path.dirname(pattern)
    return os.path.dirname(pattern[:min(positions)])


def directive_pattern(root: str, directive: Directive) -> Tuple[str, str]:
    """
    Anchor a directive's glob at its descriptor's directory.

    Returns:
        ``(pattern, base)``, both relative to ``root``. An empty base stands for the root.
    """
    rel_dir = os.path.relpath(directive.origin_dir, root)
    if rel_dir == os.curdir:
        rel_dir = ""
    pattern = os.path.normpath(os.path.join(rel_dir, directive.source))
    base = glob_base(pattern) or rel_dir
    base = os.path.normpath(base) if base else ""
    if base == os.curdir:
        base = ""
    return pattern, base


def _glob(root: str, pattern: str) -> List[str]:
    try:
        matches = glob.glob(pattern, root_dir=root, recursive=True)
    except (OSError, ValueError) as exc:
        raise ResolutionError(f"glob {pattern}: {exc}") from exc
    return [os.path.normpath(match) for match in matches]


def _excluded(root: str, directive: Directive) -> set:
    rel_dir = os.path.relpath(directive.origin_dir, root)
    if rel_dir == os.curdir:
        rel_dir = ""
    excluded = set()
    for exclude in directive.exclude:
        excluded.update(_glob(root, os.path.normpath(os.path.join(rel_dir, exclude))))
    return excluded


def select_winners(root: str, directives: List[Directive]) -> Dict[str, Tuple[Directive, str]]:
    """
    Expand every directive and keep one winner per concrete file.

    Returns:
        Map of root-relative source path (host separators) to ``(directive, base)``.
    """
    winners: Dict[str, Tuple[Directive, str]] = {}
    for directive in directives:
        pattern, base = directive_pattern(root, directive)
        excluded = _excluded(root, directive)
        for match in _glob(root, pattern):
            if match in excluded or os.path.basename(match) == DESCRIPTOR_FILENAME:
                continue
            if os.path.isdir(os.path.join(root, match)):
                continue
            existing = winners.get(match)
            if existing is None or directive.precedence > existing[0].precedence:
                winners[match] = (directive, base)
    return winners


def ancestors_for(source_abs: str, descriptors: List[DescriptorFile]) -> List[DescriptorFile]:
    """Descriptors whose directory contains ``source_abs``, root first."""
    ancestors = []
    for descriptor in descriptors:
        try:
            common = os.path.commonpath([descriptor.dir, source_abs])
        except ValueError:
            continue
        if common == descriptor.dir:
            ancestors.append(descriptor)
    return sorted(ancestors, key=lambda d: d.depth)


def lang_context_path(directory: str, lang: str) -> str:
    code = lang.strip()
    if not code:
        raise ConfigurationError("empty language code")
    if "/" in code or "\\" in code:
        raise ConfigurationError(f"invalid language code {lang!r}")
    return os.path.join(directory, LANG_CONTEXT_DIRNAME, f"{code}.md")


def read_lang_context(directory: str, lang: str) -> Optional[str]:
    """Body of ``<directory>/L10N/<lang>.md`` with any TOML header removed, or None."""
    path = lang_context_path(directory, lang)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            contents = f.read()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ResolutionError(f"read {path}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ConfigurationError(f"read {path}: not valid UTF-8: {exc}") from exc
    try:
        _, body = split_descriptor(contents)
    except ConfigurationError as exc:
        raise ConfigurationError(f"parse {path}: {exc}") from exc
    return body


def expand_output(template: str, lang: str, rel_path: str, basename: str, ext: str) -> str:
    """Fill ``{lang}``, ``{relpath}``, ``{basename}`` and ``{ext}`` and normalize for the host."""
    out = template
    out = out.replace("{lang}", lang)
    out = out.replace("{relpath}", rel_path.replace(os.sep, "/"))
    out = out.replace("{basename}", basename)
    out = out.replace("{ext}", ext)
    return os.path.normpath(out.replace("/", os.sep))


def _build_source_plan(root: str, source_rel: str, directive: Directive, base: str,
                       descriptors: List[DescriptorFile]) -> SourcePlan:
    abs_path = os.path.join(root, source_rel)
    for lang in directive.targets:
        lang_context_path(directive.origin_dir, lang)

    context_bodies: List[str] = []
    context_paths: List[str] = []
    lang_context_bodies: Dict[str, List[str]] = {}
    llm = LLMSettings()
    for ancestor in ancestors_for(abs_path, descriptors):
        if ancestor.body.strip():
            context_bodies.append(ancestor.body)
            context_paths.append(ancestor.path)
        for lang in directive.targets:
            body = read_lang_context(ancestor.dir, lang)
            if body is not None and body.strip():
                lang_context_bodies.setdefault(lang, []).append(body)
        llm = merge_llm(llm, ancestor.llm)

    try:
        coordinator, translator = resolve_agents(llm)
    except ConfigurationError as exc:
        raise ConfigurationError(f"{source_rel}: {exc}") from exc

    rel_path = os.path.relpath(abs_path, os.path.join(root, base))
    stem, ext = os.path.splitext(os.path.basename(source_rel))
    outputs = tuple(
        OutputPlan(lang=lang, output_path=expand_output(directive.output, lang, rel_path, stem, ext.lstrip(".")))
        for lang in directive.targets
    )

    return SourcePlan(
        source_path=source_rel.replace(os.sep, "/"),
        abs_path=abs_path,
        base_path=base.replace(os.sep, "/"),
        rel_path=rel_path.replace(os.sep, "/"),
        format=detect_format(source_rel),
        directive=directive,
        context_bodies=tuple(context_bodies),
        lang_context_bodies={lang: tuple(parts) for lang, parts in lang_context_bodies.items()},
        context_paths=tuple(context_paths),
        coordinator=coordinator,
        translator=translator,
        outputs=outputs,
    )


def resolve(root: str) -> List[SourcePlan]:
    """
    Build the translation plan for every source file under ``root``.

    Args:
        root: The project root directory.

    Returns:
        One SourcePlan per matched file, sorted by source path.

    Raises:
        ConfigurationError: For malformed descriptors, invalid directives,
            unknown agent roles or invalid language codes.
        ResolutionError: For filesystem failures during discovery.
    """
    root = os.path.abspath(root)
    descriptors = discover_descriptors(root)
    directives = [directive for descriptor in descriptors for directive in descriptor.directives]

    winners = select_winners(root, directives)
    plans = [
        _build_source_plan(root, source_rel, directive, base, descriptors)
        for source_rel, (directive, base) in winners.items()
    ]
    plans.sort(key=lambda plan: plan.source_path)
    logger.info("Resolved %d source file(s) from %d descriptor(s).", len(plans), len(descriptors))
    return plans
