import json
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from updose.config import DEFAULT_TIMEOUT_S, Config, config_path, load_config, redact_token, resolve_config, save_config


class TestConfig(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.path = Path(self._td.name) / "cfg" / "config.json"

    def tearDown(self) -> None:
        self._td.cleanup()

    def test_missing_file_gives_defaults(self) -> None:
        warnings: list[str] = []
        self.assertEqual(load_config(self.path, warnings=warnings), Config())
        self.assertEqual(warnings, [])

    def test_path_from_env(self) -> None:
        with patch.dict("os.environ", {"UPDOSE_CONFIG_PATH": str(self.path)}):
            self.assertEqual(config_path(), self.path)

    def test_save_and_load_ignore_unknown_keys(self) -> None:
        save_config(Config(github_token="tok", timeout_s=3.0), self.path)
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        raw["legacy_field"] = True
        self.path.write_text(json.dumps(raw), encoding="utf-8")

        cfg = load_config(self.path)

        self.assertEqual(cfg.github_token, "tok")
        self.assertEqual(cfg.timeout_s, 3.0)

    def test_saved_file_is_owner_only(self) -> None:
        save_config(Config(github_token="tok"), self.path)
        if os.name == "posix":
            self.assertEqual(stat.S_IMODE(self.path.stat().st_mode), 0o600)
        self.assertFalse(self.path.with_name("config.json.tmp").exists())

    def test_corrupt_file_falls_back_with_warning(self) -> None:
        self.path.parent.mkdir(parents=True)
        for content in (b"{not json", b'{"timeout_s": 5}\xff', b"[1, 2]"):
            with self.subTest(content=content):
                self.path.write_bytes(content)
                warnings: list[str] = []
                self.assertEqual(load_config(self.path, warnings=warnings), Config())
                self.assertEqual(len(warnings), 1)
                self.assertIn(str(self.path), warnings[0])

    def test_bad_fields_are_dropped_individually(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(
            json.dumps({"github_token": 42, "timeout_s": "fast", "registry_url": "https://registry.test"}),
            encoding="utf-8",
        )
        warnings: list[str] = []

        cfg = load_config(self.path, warnings=warnings)

        self.assertIsNone(cfg.github_token)
        self.assertEqual(cfg.timeout_s, DEFAULT_TIMEOUT_S)
        self.assertEqual(cfg.registry_url, "https://registry.test")
        self.assertEqual(len(warnings), 2)

    def test_env_overrides_file_and_arguments_override_env(self) -> None:
        base = Config(github_token="from-file", timeout_s=12.0)
        env = {"GITHUB_TOKEN": "from-env", "UPDOSE_API_URL": "https://registry.test", "UPDOSE_TIMEOUT_S": "7"}
        with patch.dict("os.environ", env, clear=True):
            cfg = resolve_config(base)
            self.assertEqual((cfg.github_token, cfg.registry_url, cfg.timeout_s), ("from-env", "https://registry.test", 7.0))

            cfg = resolve_config(base, github_token="from-flag", timeout_s=2.5)
            self.assertEqual((cfg.github_token, cfg.timeout_s), ("from-flag", 2.5))

    def test_bad_timeout_env_falls_back(self) -> None:
        with patch.dict("os.environ", {"UPDOSE_TIMEOUT_S": "soon"}, clear=True):
            self.assertEqual(resolve_config(Config()).timeout_s, DEFAULT_TIMEOUT_S)

    def test_redact_token(self) -> None:
        self.assertIsNone(redact_token(None))
        self.assertEqual(redact_token("abcdef"), "******")
        self.assertEqual(redact_token("ghp_1234567890abcd"), "ghp_***abcd")
        self.assertEqual(redact_token("1234567890abcd"), "***abcd")


if __name__ == "__main__":
    unittest.main()
