"""Per-source lock files recording what was translated from which inputs.

One JSON document per source lives at ``<root>/.l10n/locks/<source>.lock``.
A (source, language) pair is up to date only when the output exists and the
lock's source hash, output path and context hash all match the current plan.
"""
import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional

import jsonschema

from l10n.app_config import DEFAULT_STATE_DIR
from l10n.errors import LockFileError
from l10n.plan import SourcePlan

logger = logging.getLogger(__name__)

LOCKS_DIRNAME = "locks"
LOCK_SUFFIX = ".lock"

LOCK_SCHEMA = {
    "type": "object",
    "properties": {
        "source_path": {"type": "string"},
        "source_hash": {"type": "string"},
        "context_hash": {"type": "string"},
        "outputs": {
            "type": ["object", "null"],
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "hash": {"type": "string"},
                    "context_hash": {"type": "string"},
                    "checked_at": {"type": "string"},
                },
                "required": ["path"],
            },
        },
        "updated_at": {"type": "string"},
    },
}


class PairStatus(str, Enum):
    OK = "ok"
    STALE = "stale"
    MISSING = "missing"


@dataclass
class OutputLock:
    path: str
    hash: str = ""
    context_hash: str = ""
    checked_at: str = ""


@dataclass
class LockRecord:
    source_path: str
    source_hash: str = ""
    context_hash: str = ""
    outputs: Dict[str, OutputLock] = field(default_factory=dict)
    updated_at: str = ""

    def context_hash_for(self, lang: str) -> str:
        """The language's context hash, falling back to the legacy record-wide hash."""
        output = self.outputs.get(lang)
        if output is not None and output.context_hash:
            return output.context_hash
        return self.context_hash

    def to_dict(self) -> dict:
        data = {
            "source_path": self.source_path,
            "source_hash": self.source_hash,
            "outputs": {
                lang: _output_to_dict(output) for lang, output in sorted(self.outputs.items())
            },
            "updated_at": self.updated_at,
        }
        if self.context_hash:
            data["context_hash"] = self.context_hash
        return data

    @classmethod
    def from_dict(cls, data: dict, source_path: str = "") -> "LockRecord":
        outputs = {
            lang: OutputLock(
                path=value["path"],
                hash=value.get("hash", ""),
                context_hash=value.get("context_hash", ""),
                checked_at=value.get("checked_at", ""),
            )
            for lang, value in (data.get("outputs") or {}).items()
        }
        return cls(
            source_path=data.get("source_path") or source_path,
            source_hash=data.get("source_hash", ""),
            context_hash=data.get("context_hash", ""),
            outputs=outputs,
            updated_at=data.get("updated_at", ""),
        )


def _output_to_dict(output: OutputLock) -> dict:
    data = {"path": output.path, "hash": output.hash}
    if output.context_hash:
        data["context_hash"] = output.context_hash
    data["checked_at"] = output.checked_at
    return data


def now_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_text(text: str) -> str:
    return hash_bytes(text.encode("utf-8"))


def hash_context(parts: Iterable[str]) -> str:
    """Hash context parts joined by a blank line, as they are sent to the translator."""
    return hash_text("\n\n".join(parts))


def locks_dir(root: str, state_dir: str = DEFAULT_STATE_DIR) -> str:
    return os.path.join(root, state_dir, LOCKS_DIRNAME)


def lock_path(root: str, source_path: str, state_dir: str = DEFAULT_STATE_DIR) -> str:
    return os.path.join(locks_dir(root, state_dir), source_path.replace("/", os.sep) + LOCK_SUFFIX)


def source_path_from_lock(root: str, path: str, state_dir: str = DEFAULT_STATE_DIR) -> str:
    """Recover the source path a lock file mirrors from its location."""
    rel = os.path.relpath(path, locks_dir(root, state_dir))
    if rel.endswith(LOCK_SUFFIX):
        rel = rel[:-len(LOCK_SUFFIX)]
    return rel.replace(os.sep, "/")


def read_lock_file(path: str, source_path: str = "") -> LockRecord:
    """
    Parse the lock file at ``path``.

    Raises:
        LockFileError: If the file is not valid JSON or does not match the lock schema.
    """
    with open(path, 'r', encoding='utf-8') as f:
        raw = f.read()
    try:
        data = json.loads(raw)
        jsonschema.validate(instance=data, schema=LOCK_SCHEMA)
    except json.JSONDecodeError as exc:
        raise LockFileError(f"lock file '{path}' is not valid JSON: {exc}") from exc
    except jsonschema.ValidationError as exc:
        raise LockFileError(f"lock file '{path}' is malformed: {exc.message}") from exc
    return LockRecord.from_dict(data, source_path)


def read_lock(root: str, source_path: str, state_dir: str = DEFAULT_STATE_DIR) -> Optional[LockRecord]:
    """Load the lock record for ``source_path``; None when it was never written."""
    path = lock_path(root, source_path, state_dir)
    if not os.path.exists(path):
        return None
    return read_lock_file(path, source_path)


def write_lock(root: str, record: LockRecord, state_dir: str = DEFAULT_STATE_DIR) -> str:
    """Persist the full record, stamping ``updated_at``. Returns the lock path."""
    record.updated_at = now_utc()
    path = lock_path(root, record.source_path, state_dir)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(record.to_dict(), f, indent=2, ensure_ascii=False)
        f.write("\n")
    logger.debug("Wrote lock file '%s'.", path)
    return path


def read_source_bytes(plan: SourcePlan) -> bytes:
    with open(plan.abs_path, 'rb') as f:
        return f.read()


def output_exists(root: str, plan: SourcePlan, lang: str) -> bool:
    output = plan.output_for(lang)
    return output is not None and os.path.exists(os.path.join(root, output.output_path))


def pair_status(root: str, plan: SourcePlan, lang: str, record: Optional[LockRecord] = None,
                source_hash: Optional[str] = None, state_dir: str = DEFAULT_STATE_DIR) -> PairStatus:
    """
    Classify one (source, language) pair.

    Args:
        root: The project root.
        plan: The source's current plan.
        lang: The target language.
        record: The source's lock record; read from disk when omitted.
        source_hash: The source's current hash; computed when omitted.
        state_dir: The state directory, relative to root.

    Returns:
        MISSING when the output file does not exist, STALE when any recorded
        input differs from the plan, otherwise OK.
    """
    if not output_exists(root, plan, lang):
        return PairStatus.MISSING
    if record is None:
        record = read_lock(root, plan.source_path, state_dir)
    if record is None:
        return PairStatus.STALE
    if source_hash is None:
        source_hash = hash_bytes(read_source_bytes(plan))
    if record.source_hash != source_hash:
        return PairStatus.STALE
    output_lock = record.outputs.get(lang)
    if output_lock is None or output_lock.path != plan.output_for(lang).output_path:
        return PairStatus.STALE
    if record.context_hash_for(lang) != hash_context(plan.context_parts_for(lang)):
        return PairStatus.STALE
    return PairStatus.OK


def is_up_to_date(root: str, plan: SourcePlan, lang: str, record: Optional[LockRecord] = None,
                  state_dir: str = DEFAULT_STATE_DIR) -> bool:
    return pair_status(root, plan, lang, record, state_dir=state_dir) is PairStatus.OK


def record_success(root: str, plan: SourcePlan, lang: str, text: str, record: Optional[LockRecord] = None,
                   state_dir: str = DEFAULT_STATE_DIR, source_hash: Optional[str] = None) -> LockRecord:
    """
    Record a successful output for ``lang`` and persist the whole record.

    Languages already present in ``record`` (or the lock on disk when no
    record is given) are kept. ``source_hash`` must be the hash of the bytes
    that were translated; the source is only re-read when it is omitted.

    Returns:
        The updated record.
    """
    if record is None:
        record = read_lock(root, plan.source_path, state_dir) or LockRecord(source_path=plan.source_path)
    if source_hash is None:
        source_hash = hash_bytes(read_source_bytes(plan))
    record.source_hash = source_hash
    record.outputs[lang] = OutputLock(
        path=plan.output_for(lang).output_path,
        hash=hash_text(text),
        context_hash=hash_context(plan.context_parts_for(lang)),
        checked_at=now_utc(),
    )
    write_lock(root, record, state_dir)
    return record


class StalenessTracker:
    """
    Caches lock records and source hashes for one run.

    Each lock is read once and successive languages accumulate into the same
    record, which is written in full after every success.
    """

    def __init__(self, root: str, state_dir: str = DEFAULT_STATE_DIR):
        self.root = os.path.abspath(root)
        self.state_dir = state_dir
        self._records: Dict[str, Optional[LockRecord]] = {}
        self._source_hashes: Dict[str, str] = {}

    def load(self, source_path: str) -> Optional[LockRecord]:
        if source_path not in self._records:
            self._records[source_path] = read_lock(self.root, source_path, self.state_dir)
        return self._records[source_path]

    def source_hash(self, plan: SourcePlan) -> str:
        if plan.source_path not in self._source_hashes:
            self._source_hashes[plan.source_path] = hash_bytes(read_source_bytes(plan))
        return self._source_hashes[plan.source_path]

    def status(self, plan: SourcePlan, lang: str) -> PairStatus:
        if not output_exists(self.root, plan, lang):
            return PairStatus.MISSING
        return pair_status(self.root, plan, lang, self.load(plan.source_path),
                           self.source_hash(plan), self.state_dir)

    def is_up_to_date(self, plan: SourcePlan, lang: str) -> bool:
        return self.status(plan, lang) is PairStatus.OK

    def record_success(self, plan: SourcePlan, lang: str, text: str,
                       source_hash: Optional[str] = None) -> LockRecord:
        record = self.load(plan.source_path) or LockRecord(source_path=plan.source_path)
        record = record_success(self.root, plan, lang, text, record, self.state_dir, source_hash)
        self._records[plan.source_path] = record
        return record
