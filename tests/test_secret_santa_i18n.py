"""
String Table Test Suite

Run: python -m pytest tests/test_secret_santa_i18n.py -v
"""

import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cogs.secret_santa_i18n import LOCALES_DIR, StringKey, Strings, localize
from cogs.secret_santa_models import Language


class TestBundledTables:
    """The shipped locale files"""

    def test_english_is_complete(self):
        table = json.loads((LOCALES_DIR / "en.json").read_text(encoding="utf-8"))
        missing = [key.value for key in StringKey if key.value not in table]
        assert missing == []

    def test_every_language_has_a_file(self):
        for lang in Language:
            assert (LOCALES_DIR / f"{lang.code}.json").exists(), lang

    def test_lookup(self):
        assert localize(StringKey.CANCEL_BUTTON, Language.EN) == "❌ Cancel"
        assert localize(StringKey.CANCEL_BUTTON, Language.RU) != "❌ Cancel"

    def test_partial_language_falls_back_to_english(self):
        uz_table = json.loads((LOCALES_DIR / "uz.json").read_text(encoding="utf-8"))
        assert "WELCOME_BODY" not in uz_table
        assert localize(StringKey.WELCOME_BODY, Language.UZ) == localize(StringKey.WELCOME_BODY, Language.EN)

    def test_placeholders_match_english(self):
        """Translations must use the same {placeholders} as English"""
        en_table = json.loads((LOCALES_DIR / "en.json").read_text(encoding="utf-8"))
        for lang in Language:
            table = json.loads((LOCALES_DIR / f"{lang.code}.json").read_text(encoding="utf-8"))
            for key, text in table.items():
                for placeholder in ("{game}", "{link}", "{giftee}", "{wishlist}", "{code}", "{bot}"):
                    assert (placeholder in text) == (placeholder in en_table[key]), f"{lang.code}:{key}"


class TestStringsLoader:
    """Strings.preload_all / Strings.get with custom tables"""

    def test_preload_from_directory(self, tmp_path, monkeypatch):
        monkeypatch.setattr(Strings, "_tables", {})
        (tmp_path / "en.json").write_text(json.dumps({"CANCEL_BUTTON": "Stop"}), encoding="utf-8")
        (tmp_path / "ru.json").write_text("{broken", encoding="utf-8")

        Strings.preload_all(tmp_path)

        assert Strings.get(StringKey.CANCEL_BUTTON, Language.EN) == "Stop"
        assert Strings.get(StringKey.CANCEL_BUTTON, Language.RU) == "Stop"
        assert Strings.get(StringKey.CANCEL_BUTTON, Language.KK) == "Stop"

    def test_missing_everywhere_returns_key_name(self, monkeypatch):
        monkeypatch.setattr(Strings, "_tables", {Language.EN: {}})
        assert Strings.get(StringKey.DONE_BUTTON, Language.CS) == "DONE_BUTTON"
