"""Fenced frontmatter splitting for descriptor files and Markdown sources."""
from dataclasses import dataclass
from typing import Optional, Tuple

TOML_FENCE = "+++"
YAML_FENCE = "---"
FRONTMATTER_FENCES = (YAML_FENCE, TOML_FENCE)


class UnclosedFrontmatterError(ValueError):
    """An opening fence was found without a matching closing fence."""

    def __init__(self, fence: str):
        super().__init__(f"frontmatter start found but no closing {fence}")
        self.fence = fence


@dataclass(frozen=True)
class Frontmatter:
    fence: str
    header: str
    fenced: str
    body: str


def split_frontmatter(contents: str, fences: Tuple[str, ...] = FRONTMATTER_FENCES) -> Optional[Frontmatter]:
    """
    Split a document into its fenced header and body.

    The first line must be one of ``fences`` (surrounding whitespace ignored)
    and the header ends at the first later line equal to the same fence.

    Args:
        contents: The full document text.
        fences: The fence markers recognized as an opening line.

    Returns:
        A Frontmatter with the inner header text, the header including both
        fence lines, and the remaining body; or None when the document does
        not open with a fence.

    Raises:
        UnclosedFrontmatterError: If the opening fence is never closed.
    """
    lines = contents.split("\n")
    fence = lines[0].strip()
    if fence not in fences:
        return None

    for i in range(1, len(lines)):
        if lines[i].strip() == fence:
            return Frontmatter(
                fence=fence,
                header="\n".join(lines[1:i]),
                fenced="\n".join(lines[:i + 1]),
                body="\n".join(lines[i + 1:]),
            )
    raise UnclosedFrontmatterError(fence)
