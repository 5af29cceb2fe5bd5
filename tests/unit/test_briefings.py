"""Unit tests for the vault briefing store."""
import pytest

from roundtable.providers.briefings import BriefingStore, InvalidKey
from roundtable.providers.errors import NotFound


@pytest.fixture
def vault(tmp_path):
    daily = tmp_path / "Briefings" / "Daily"
    daily.mkdir(parents=True)
    (daily / "2026-03-02.md").write_text("# Tuesday\n", encoding="utf-8")
    (daily / "2026-03-01.md").write_text("# Monday\n", encoding="utf-8")
    (daily / "archive").mkdir()
    (tmp_path / "secret.md").write_text("nope", encoding="utf-8")
    return tmp_path


def test_list_is_sorted_and_skips_directories(vault):
    assert BriefingStore(vault).list() == ["2026-03-01.md", "2026-03-02.md"]


def test_list_missing_directory(tmp_path):
    with pytest.raises(NotFound):
        BriefingStore(tmp_path).list()


def test_get_briefing(vault):
    assert BriefingStore(vault).get("2026-03-01") == "# Monday\n"


def test_get_missing_briefing(vault):
    with pytest.raises(NotFound):
        BriefingStore(vault).get("2025-01-01")


@pytest.mark.parametrize("key", ["../../secret", "2026-03-01.md", "..", "today"])
def test_get_rejects_invalid_keys(vault, key):
    with pytest.raises(InvalidKey):
        BriefingStore(vault).get(key)
