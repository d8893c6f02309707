"""Validation of translated text: syntax, preserved tokens and external commands."""
import json
import logging
import os
import re
import subprocess
import tempfile
import tomllib
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

import yaml

from l10n.app_config import DEFAULT_STATE_DIR
from l10n.errors import ToolError
from l10n.frontmatter import TOML_FENCE, YAML_FENCE, UnclosedFrontmatterError, split_frontmatter
from l10n.plan import Format

logger = logging.getLogger(__name__)

TOOL_SYNTAX = "syntax-validator"
TOOL_PRESERVE = "preserve-check"
TOOL_CUSTOM_COMMAND = "custom-command"

PRESERVE_CODE_BLOCKS = "code_blocks"
PRESERVE_INLINE_CODE = "inline_code"
PRESERVE_URLS = "urls"
PRESERVE_PLACEHOLDERS = "placeholders"
DEFAULT_PRESERVE = (PRESERVE_CODE_BLOCKS, PRESERVE_INLINE_CODE, PRESERVE_URLS, PRESERVE_PLACEHOLDERS)
PRESERVE_NONE = "none"

MAX_REPORTED_MISSING = 5

CODE_BLOCK_RE = re.compile(r'```.*?```', re.DOTALL)
INLINE_CODE_RE = re.compile(r'`[^`\n]+`')
URL_RE = re.compile(r'https?://[^\s)"\'<>]+')
PLACEHOLDER_RE = re.compile(r'\{[^\s{}]+\}')

TOOLS_SUMMARY = (
    "syntax validators (JSON, YAML, PO, Markdown frontmatter), "
    "preserve checks (code blocks, inline code, URLs, placeholders), "
    "and optional custom commands"
)


@dataclass(frozen=True)
class ValidationOptions:
    """
    Per-pair validation settings.

    ``check_cmd_override`` comes from the command line; when set it replaces
    both the per-format ``check_cmds`` and the directive's ``check_cmd``.
    """
    preserve: Tuple[str, ...] = ()
    check_cmd: str = ""
    check_cmds: Dict[str, str] = field(default_factory=dict)
    check_cmd_override: str = ""


# --- Syntax ---

def _has_quoted_string(line: str) -> bool:
    count = 0
    escaped = False
    for ch in line:
        if ch == "\\" and not escaped:
            escaped = True
            continue
        if ch == '"' and not escaped:
            count += 1
        escaped = False
    return count >= 2


def validate_po(content: str) -> Optional[str]:
    """
    Check gettext PO structure line by line.

    Returns:
        An error message for the first problem found, or None.
    """
    state = ""
    has_msgid = False
    has_msgstr = False

    for raw_line in content.split("\n"):
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue

        if line.startswith("msgid "):
            if has_msgid and not has_msgstr:
                return "po entry missing msgstr"
            has_msgid = True
            has_msgstr = False
            state = "msgid"
            if not _has_quoted_string(line):
                return "po msgid missing quoted string"
        elif line.startswith("msgid_plural "):
            if state != "msgid":
                return "po msgid_plural without msgid"
            if not _has_quoted_string(line):
                return "po msgid_plural missing quoted string"
        elif line.startswith("msgstr"):
            if not has_msgid:
                return "po msgstr without msgid"
            has_msgstr = True
            state = "msgstr"
            if not _has_quoted_string(line):
                return "po msgstr missing quoted string"
        elif line.startswith('"'):
            if not state:
                return "po stray quoted string"
        else:
            return f"po invalid line: {line}"

    if has_msgid and not has_msgstr:
        return "po entry missing msgstr"
    return None


def validate_markdown(content: str) -> Optional[str]:
    """Markdown is free-form; only a leading frontmatter block is checked."""
    try:
        frontmatter = split_frontmatter(content)
    except UnclosedFrontmatterError as exc:
        return f"markdown frontmatter missing closing {exc.fence}"
    if frontmatter is None:
        return None

    if frontmatter.fence == YAML_FENCE:
        try:
            yaml.safe_load(frontmatter.header)
        except yaml.YAMLError as exc:
            return f"markdown frontmatter invalid yaml: {exc}"
    elif frontmatter.fence == TOML_FENCE:
        try:
            tomllib.loads(frontmatter.header)
        except tomllib.TOMLDecodeError as exc:
            return f"markdown frontmatter invalid toml: {exc}"
    return None


def validate_syntax(fmt: Format, content: str) -> Optional[str]:
    if fmt == Format.JSON:
        try:
            json.loads(content)
        except json.JSONDecodeError as exc:
            return f"json invalid: {exc}"
    elif fmt == Format.YAML:
        try:
            list(yaml.safe_load_all(content))
        except yaml.YAMLError as exc:
            return f"yaml invalid: {exc}"
    elif fmt == Format.PO:
        return validate_po(content)
    elif fmt == Format.MARKDOWN:
        return validate_markdown(content)
    return None


# --- Preserve ---

def resolve_preserve(preserve: Iterable[str]) -> Set[str]:
    """
    Normalize preserve categories.

    An empty list means the defaults and ``none`` disables the check. Blank
    names are dropped, so a list of only blanks also disables it.
    """
    preserve = list(preserve)
    if not preserve:
        return set(DEFAULT_PRESERVE)
    kinds = {kind.strip().lower() for kind in preserve}
    if PRESERVE_NONE in kinds:
        return set()
    kinds.discard("")
    return kinds


def extract_preservables(source: str, kinds: Set[str]) -> List[str]:
    """
    Collect the tokens that must appear verbatim in a translation.

    Fenced code blocks are taken first and removed from the text so that
    nothing inside them is collected again as inline code, URLs or placeholders.

    Returns:
        Tokens in first-occurrence order, without duplicates.
    """
    tokens: List[str] = []
    seen: Set[str] = set()

    def collect(pattern: re.Pattern, text: str) -> None:
        for match in pattern.finditer(text):
            token = match.group(0)
            if token not in seen:
                seen.add(token)
                tokens.append(token)

    text = source
    if PRESERVE_CODE_BLOCKS in kinds:
        collect(CODE_BLOCK_RE, text)
        text = CODE_BLOCK_RE.sub("", text)
    if PRESERVE_INLINE_CODE in kinds:
        collect(INLINE_CODE_RE, text)
    if PRESERVE_URLS in kinds:
        collect(URL_RE, text)
    if PRESERVE_PLACEHOLDERS in kinds:
        collect(PLACEHOLDER_RE, text)
    return tokens


def validate_preserve(output: str, source: str, kinds: Set[str]) -> Optional[str]:
    missing = []
    for token in extract_preservables(source, kinds):
        if token not in output:
            missing.append(token)
            if len(missing) >= MAX_REPORTED_MISSING:
                break
    if missing:
        return f"preserved tokens missing from output: {json.dumps(missing, ensure_ascii=False)}"
    return None


# --- External command ---

def select_check_cmd(fmt: Format, options: ValidationOptions) -> str:
    """The command-line override wins, then ``check_cmds[format]``, then ``check_cmd``."""
    if options.check_cmd_override.strip():
        return options.check_cmd_override.strip()
    per_format = options.check_cmds.get(fmt.value, "")
    if per_format.strip():
        return per_format
    return options.check_cmd.strip()


def run_external_check(root: str, command_template: str, content: str,
                       state_dir: str = DEFAULT_STATE_DIR) -> Optional[str]:
    """
    Run a check command against ``content`` written to a temporary file.

    ``{path}`` in the template is replaced with the temporary file's path.
    The command runs through the shell with the project root as working
    directory. The temporary file is always removed.

    Returns:
        None when the command exits with status 0, otherwise an error message
        holding its combined output.
    """
    if not root:
        return "external check requires root path"

    tmp_dir = os.path.join(root, state_dir, "tmp")
    temp_file_path = None
    try:
        try:
            os.makedirs(tmp_dir, exist_ok=True)
            with tempfile.NamedTemporaryFile(mode='w', delete=False, dir=tmp_dir, prefix='check-',
                                             suffix='.tmp', encoding='utf-8') as temp_f:
                temp_file_path = temp_f.name
                temp_f.write(content)
        except OSError as exc:
            return f"external check setup failed: {exc}"

        command = command_template.replace("{path}", temp_file_path)
        logger.debug("Running check command: %s", command)
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=root,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except OSError as exc:
            return f"external check failed: {exc}"
        if result.returncode != 0:
            output = (result.stdout or "").strip()
            return f"external check failed: exit status {result.returncode}\n{output}".rstrip()
        return None
    finally:
        if temp_file_path and os.path.exists(temp_file_path):
            try:
                os.remove(temp_file_path)
            except OSError as _e:
                logger.warning("Could not delete temporary check file '%s': %s", temp_file_path, _e)


def validate(fmt: Format, produced: str, source: str, options: ValidationOptions, root: str,
             state_dir: str = DEFAULT_STATE_DIR) -> None:
    """
    Run the validation phases in order, stopping at the first failure.

    Args:
        fmt: The source's format.
        produced: The translated text.
        source: The original source text.
        options: Preserve categories and check commands for this pair.
        root: The project root, working directory for check commands.
        state_dir: The state directory holding temporary check files.

    Raises:
        ToolError: Naming the failing tool (``syntax-validator``,
            ``preserve-check`` or ``custom-command``).
    """
    logger.debug("%s: parse %s", TOOL_SYNTAX, fmt.value)
    error = validate_syntax(fmt, produced)
    if error:
        raise ToolError(TOOL_SYNTAX, error)

    kinds = resolve_preserve(options.preserve)
    if kinds:
        logger.debug("%s: verify preserved tokens", TOOL_PRESERVE)
        error = validate_preserve(produced, source, kinds)
        if error:
            raise ToolError(TOOL_PRESERVE, error)

    command = select_check_cmd(fmt, options)
    if command:
        logger.debug("%s: run check command", TOOL_CUSTOM_COMMAND)
        error = run_external_check(root, command, produced, state_dir)
        if error:
            raise ToolError(TOOL_CUSTOM_COMMAND, error)
