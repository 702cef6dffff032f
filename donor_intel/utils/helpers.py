from pathlib import Path
from typing import Iterator, List, Sequence, TypeVar

from jinja2 import Template

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

T = TypeVar("T")


def load_prompt(name: str) -> str:
    """Read a prompt template by file name from the packaged prompts/ folder."""
    path = Path(name)
    if not path.is_absolute():
        path = PROMPTS_DIR / name
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def render_prompt(template_text: str, variables: dict) -> str:
    return Template(template_text).render(**(variables or {})).strip()


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of at most `size` items."""
    if size <= 0:
        raise ValueError("size must be positive")
    for i in range(0, len(items), size):
        yield list(items[i:i + size])
