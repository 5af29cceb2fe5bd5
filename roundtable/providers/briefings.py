"""Document store — daily briefings as Markdown files in the vault.

Layout: <vault>/Briefings/Daily/YYYY-MM-DD.md. Keys are validated before any
path is built, and the resolved path must stay inside the briefings directory.
"""
from pathlib import Path

from roundtable.core.validation import is_date_key
from roundtable.providers.errors import NotFound


class InvalidKey(ValueError):
    """Raised for a briefing key that is not YYYY-MM-DD."""


class BriefingStore:
    def __init__(self, vault_path: str | Path):
        self.root = (Path(vault_path) / "Briefings" / "Daily").resolve()

    def list(self) -> list[str]:
        if not self.root.is_dir():
            raise NotFound("Briefings directory not found")
        return sorted(p.name for p in self.root.iterdir() if not p.is_dir())

    def get(self, date: str) -> str:
        if not is_date_key(date):
            raise InvalidKey("Invalid date format")
        path = (self.root / f"{date}.md").resolve()
        if not path.is_relative_to(self.root):
            raise InvalidKey("Forbidden")
        try:
            return path.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise NotFound(f"Briefing {date} not found") from exc
