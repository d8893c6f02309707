"""The ``translate``, ``check``, ``status`` and ``clean`` commands."""
import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, TextIO, Tuple

import tiktoken
from tqdm import tqdm

from l10n.app_config import AppConfig
from l10n.errors import (
    LockFileError,
    MissingOutputError,
    ResolutionError,
    TranslationFailed,
    UnsafePathError,
)
from l10n.lockfile import (
    LOCK_SUFFIX,
    PairStatus,
    StalenessTracker,
    hash_bytes,
    lock_path,
    locks_dir,
    read_lock_file,
    read_source_bytes,
    source_path_from_lock,
)
from l10n.orchestrator import TranslationRequest, Translator, default_brief, resolve_retries
from l10n.plan import OutputPlan, SourcePlan, resolve
from l10n.validation import ValidationOptions, validate

logger = logging.getLogger(__name__)


class Reporter:
    """Prints labelled status lines without breaking active progress bars."""

    def __init__(self, stream: Optional[TextIO] = None, show_progress: Optional[bool] = None):
        self.stream = stream or sys.stdout
        # None lets tqdm disable itself when stderr is not a terminal.
        self.show_progress = show_progress
        self.lines: List[str] = []

    def log(self, label: str, message: str) -> None:
        line = f"{label:>12} {message}"
        self.lines.append(line)
        tqdm.write(line, file=self.stream)

    def progress(self, desc: str, total: int) -> tqdm:
        disable = None if self.show_progress is None else not self.show_progress
        return tqdm(total=total, desc=desc, unit="pair", disable=disable, leave=False)


class PairState(str, Enum):
    UP_TO_DATE = "up-to-date"
    WRITTEN = "written"
    FAILED = "failed"


@dataclass
class PairOutcome:
    source_path: str
    output_path: str
    lang: str
    state: PairState
    tool: Optional[str] = None
    error: str = ""


@dataclass
class PlannedPair:
    """A pair a dry run would translate."""
    source_path: str
    output_path: str
    lang: str
    estimated_tokens: int


@dataclass
class TranslateResult:
    outcomes: List[PairOutcome] = field(default_factory=list)
    planned: List[PlannedPair] = field(default_factory=list)

    @property
    def failures(self) -> List[PairOutcome]:
        return [outcome for outcome in self.outcomes if outcome.state == PairState.FAILED]

    @property
    def written(self) -> List[PairOutcome]:
        return [outcome for outcome in self.outcomes if outcome.state == PairState.WRITTEN]


@dataclass
class StatusSummary:
    up_to_date: int = 0
    stale: int = 0
    missing: int = 0

    @property
    def clean(self) -> bool:
        return self.stale == 0 and self.missing == 0


@dataclass
class CleanSummary:
    removed: int = 0
    not_found: int = 0
    locks_removed: int = 0


def pair_label(plan: SourcePlan, output: OutputPlan) -> str:
    return f"{plan.source_path} -> {output.output_path} ({output.lang})"


def count_tokens(text: str, model_name: str = 'gpt-4o') -> int:
    """Count the number of tokens in ``text`` for ``model_name``.

    ``tiktoken.encoding_for_model`` may need to download model data, which is
    not always possible. If that fails the ``gpt2`` encoding bundled with
    ``tiktoken`` is used, and as a last resort a whitespace split.
    """
    try:
        encoding = tiktoken.encoding_for_model(model_name)
    except Exception:
        try:
            encoding = tiktoken.get_encoding("gpt2")
        except Exception:
            return len(text.split())

    try:
        return len(encoding.encode(text))
    except Exception:
        return len(text.split())


def _resolve_plans(app_config: AppConfig) -> List[SourcePlan]:
    plans = resolve(app_config.root)
    if not plans:
        raise ResolutionError("no sources found")
    return plans


def _decode(data: bytes, path: str) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ResolutionError(f"read {path}: not valid UTF-8: {exc}") from exc


def _read_text(path: str) -> str:
    with open(path, "rb") as f:
        return _decode(f.read(), path)


@dataclass
class LoadedSource:
    """Source text together with the hash of the exact bytes it was decoded from."""
    text: str
    hash: str


def _cached_source(sources: Dict[str, LoadedSource], plan: SourcePlan) -> LoadedSource:
    if plan.source_path not in sources:
        data = read_source_bytes(plan)
        sources[plan.source_path] = LoadedSource(_decode(data, plan.source_path), hash_bytes(data))
    return sources[plan.source_path]


def validation_options(plan: SourcePlan, check_cmd_override: str = "") -> ValidationOptions:
    directive = plan.directive
    return ValidationOptions(
        preserve=directive.preserve,
        check_cmd=directive.check_cmd,
        check_cmds=dict(directive.check_cmds),
        check_cmd_override=check_cmd_override,
    )


def build_request(app_config: AppConfig, plan: SourcePlan, lang: str, source: str,
                  retries: Optional[int] = None, check_cmd_override: str = "") -> TranslationRequest:
    directive = plan.directive
    return TranslationRequest(
        source_path=plan.source_path,
        source=source,
        target_lang=lang,
        format=plan.format,
        context=plan.context_for(lang),
        coordinator=plan.coordinator,
        translator=plan.translator,
        root=app_config.root,
        retries=resolve_retries(retries, directive.retries, app_config.default_retries),
        preserve=directive.preserve,
        frontmatter=directive.frontmatter,
        check_cmd=directive.check_cmd,
        check_cmds=dict(directive.check_cmds),
        check_cmd_override=check_cmd_override,
        state_dir=app_config.state_dir,
    )


def estimate_prompt_tokens(request: TranslationRequest, model_name: str) -> int:
    prompt = "\n\n".join([default_brief(request), request.context, request.source])
    return count_tokens(prompt, model_name)


def write_output(root: str, output: OutputPlan, text: str) -> str:
    output_abs = os.path.join(root, output.output_path)
    output_dir = os.path.dirname(output_abs)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    with open(output_abs, 'w', encoding='utf-8') as f:
        f.write(text)
    return output_abs


async def translate_command(app_config: AppConfig, translator: Translator, force: bool = False,
                            retries: Optional[int] = None, dry_run: bool = False, check_cmd: str = "",
                            continue_on_error: Optional[bool] = None,
                            reporter: Optional[Reporter] = None) -> TranslateResult:
    """
    Translate every stale (source, language) pair.

    Pairs are processed one at a time. Each successful language is written
    and recorded in the source's lock file before the next pair starts.

    Args:
        app_config: Tool settings; ``root`` is the project root.
        translator: The orchestrator driving the backend.
        force: Translate every pair, even those that are up to date.
        retries: Run-wide retry override; negative or None defers to the directive.
        dry_run: Report what would be translated with token estimates; write nothing.
        check_cmd: Check command overriding the directives' ``check_cmd``/``check_cmds``.
        continue_on_error: Overrides the configured failure policy when not None.
        reporter: Where status lines go.

    Returns:
        TranslateResult: One outcome per planned pair (or the planned pairs for a dry run).

    Raises:
        TranslationFailed: Under the fail-fast policy, for the first pair that fails.
        ConfigurationError, ResolutionError, LockFileError: Fatal plan or state problems.
    """
    reporter = reporter or Reporter()
    root = app_config.root
    if continue_on_error is None:
        continue_on_error = app_config.continue_on_error

    plans = _resolve_plans(app_config)
    tracker = StalenessTracker(root, app_config.state_dir)
    result = TranslateResult()

    pending: List[Tuple[SourcePlan, OutputPlan]] = []
    for plan in plans:
        for output in plan.outputs:
            if not force and tracker.is_up_to_date(plan, output.lang):
                result.outcomes.append(
                    PairOutcome(plan.source_path, output.output_path, output.lang, PairState.UP_TO_DATE)
                )
                continue
            pending.append((plan, output))

    if not pending:
        reporter.log("Info", "no translations needed")
        return result

    logger.info("%d translation(s) to run.", len(pending))
    sources: Dict[str, LoadedSource] = {}

    if dry_run:
        for plan, output in pending:
            source = _cached_source(sources, plan)
            request = build_request(app_config, plan, output.lang, source.text, retries, check_cmd)
            tokens = estimate_prompt_tokens(request, app_config.token_model)
            result.planned.append(PlannedPair(plan.source_path, output.output_path, output.lang, tokens))
            reporter.log("Dry run", f"{pair_label(plan, output)} ~{tokens} tokens")
        return result

    with reporter.progress("Translating", len(pending)) as progress:
        for plan, output in pending:
            label = pair_label(plan, output)
            source = _cached_source(sources, plan)
            request = build_request(app_config, plan, output.lang, source.text, retries, check_cmd)
            progress.set_postfix_str(label)
            try:
                text = await translator.translate(request)
            except TranslationFailed as exc:
                result.outcomes.append(PairOutcome(
                    plan.source_path, output.output_path, output.lang, PairState.FAILED,
                    tool=exc.tool, error=str(exc.last_error),
                ))
                reporter.log("Failed", f"{label}: {exc.last_error}")
                if not continue_on_error:
                    raise
                continue
            finally:
                progress.update(1)

            write_output(root, output, text)
            tracker.record_success(plan, output.lang, text, source.hash)
            result.outcomes.append(PairOutcome(plan.source_path, output.output_path, output.lang, PairState.WRITTEN))
            reporter.log("Translated", label)

    if result.failures:
        logger.error("%d of %d translation(s) failed.", len(result.failures), len(pending))
    return result


def check_command(app_config: AppConfig, check_cmd: str = "", reporter: Optional[Reporter] = None) -> int:
    """
    Validate every existing output against its source.

    Returns:
        The number of outputs checked.

    Raises:
        MissingOutputError: If a planned output does not exist.
        ToolError: For the first output that fails validation.
    """
    reporter = reporter or Reporter()
    root = app_config.root
    plans = _resolve_plans(app_config)
    total = sum(len(plan.outputs) for plan in plans)

    checked = 0
    with reporter.progress("Validating", total) as progress:
        for plan in plans:
            source = _read_text(plan.abs_path)
            options = validation_options(plan, check_cmd)
            for output in plan.outputs:
                output_abs = os.path.join(root, output.output_path)
                if not os.path.exists(output_abs):
                    raise MissingOutputError(f"missing output: {output.output_path}")
                progress.set_postfix_str(pair_label(plan, output))
                validate(plan.format, _read_text(output_abs), source, options, root, app_config.state_dir)
                progress.update(1)
                checked += 1

    reporter.log("Checked", f"{checked} output(s) passed validation")
    return checked


_STATUS_LABELS = {
    PairStatus.OK: "Ok",
    PairStatus.STALE: "Stale",
    PairStatus.MISSING: "Missing",
}


def status_command(app_config: AppConfig, reporter: Optional[Reporter] = None) -> StatusSummary:
    """Report every pair as ok, stale or missing."""
    reporter = reporter or Reporter()
    plans = _resolve_plans(app_config)
    tracker = StalenessTracker(app_config.root, app_config.state_dir)

    summary = StatusSummary()
    for plan in plans:
        for output in plan.outputs:
            status = tracker.status(plan, output.lang)
            if status is PairStatus.OK:
                summary.up_to_date += 1
            elif status is PairStatus.STALE:
                summary.stale += 1
            else:
                summary.missing += 1
            reporter.log(_STATUS_LABELS[status], pair_label(plan, output))

    reporter.log("Summary", f"{summary.up_to_date} ok, {summary.stale} stale, {summary.missing} missing")
    return summary


def resolve_within_root(root: str, path: str) -> str:
    """
    Absolute form of ``path`` (relative to ``root``).

    Raises:
        UnsafePathError: If the path resolves outside the root.
    """
    root_abs = os.path.abspath(root)
    path_abs = os.path.abspath(os.path.join(root_abs, path))
    if os.path.commonpath([root_abs, path_abs]) != root_abs or path_abs == root_abs:
        raise UnsafePathError(f"refusing to remove path outside root: {path}")
    return path_abs


def _remove_path(path: str, dry_run: bool) -> bool:
    if not os.path.exists(path):
        return False
    if not dry_run:
        os.remove(path)
    return True


class _Cleaner:
    def __init__(self, summary: CleanSummary, reporter: Reporter, dry_run: bool):
        self.summary = summary
        self.reporter = reporter
        self.dry_run = dry_run
        self.removed_label = "Would remove" if dry_run else "Removed"

    def remove_output(self, path_abs: str, display: str) -> None:
        if _remove_path(path_abs, self.dry_run):
            self.summary.removed += 1
            self.reporter.log(self.removed_label, display)
        else:
            self.summary.not_found += 1
            self.reporter.log("Skipped", f"{display} (not found)")

    def remove_lock(self, path_abs: str) -> None:
        if _remove_path(path_abs, self.dry_run):
            self.summary.locks_removed += 1
            self.reporter.log(self.removed_label, path_abs)
        else:
            self.summary.not_found += 1
            self.reporter.log("Skipped", f"{path_abs} (not found)")


def _lock_files(directory: str) -> List[str]:
    found = []
    for dirpath, _dirnames, filenames in os.walk(directory):
        for filename in filenames:
            if filename.endswith(LOCK_SUFFIX):
                found.append(os.path.join(dirpath, filename))
    return sorted(found)


def clean_command(app_config: AppConfig, dry_run: bool = False, orphans: bool = False,
                  reporter: Optional[Reporter] = None) -> CleanSummary:
    """
    Remove planned outputs and their lock files.

    With ``orphans``, also remove outputs and locks recorded for sources that
    are no longer planned. Unreadable orphan locks are skipped.

    Raises:
        UnsafePathError: If an output path resolves outside the project root.
    """
    reporter = reporter or Reporter()
    root = app_config.root
    plans = _resolve_plans(app_config)
    planned = {plan.source_path for plan in plans}

    summary = CleanSummary()
    cleaner = _Cleaner(summary, reporter, dry_run)

    for plan in plans:
        for output in plan.outputs:
            cleaner.remove_output(resolve_within_root(root, output.output_path), output.output_path)
        cleaner.remove_lock(lock_path(root, plan.source_path, app_config.state_dir))

    if orphans:
        for path in _lock_files(locks_dir(root, app_config.state_dir)):
            try:
                record = read_lock_file(path)
            except LockFileError as exc:
                logger.warning("Skipping unreadable lock file '%s': %s", path, exc)
                continue
            source_path = record.source_path.strip() or source_path_from_lock(root, path, app_config.state_dir)
            if source_path in planned:
                continue
            for output_lock in record.outputs.values():
                cleaner.remove_output(resolve_within_root(root, output_lock.path), output_lock.path)
            cleaner.remove_lock(path)

    reporter.log(
        "Cleaned",
        f"{summary.removed} files removed, {summary.not_found} not found, {summary.locks_removed} lockfiles removed",
    )
    return summary
