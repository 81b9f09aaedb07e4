import json
import tempfile
import unittest
from pathlib import Path

from updose.lockfile import (
    LOCKFILE_NAME,
    Lockfile,
    LockfileEntry,
    SkillLockEntry,
    merge_skill_entries,
    read_lockfile,
    render_lockfile,
    utc_timestamp,
    write_lockfile,
)


class TestLockfile(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)

    def tearDown(self) -> None:
        self._td.cleanup()

    def _write_raw(self, payload) -> None:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        (self.root / LOCKFILE_NAME).write_text(text, encoding="utf-8")

    def test_missing_lockfile_is_empty(self) -> None:
        lock = read_lockfile(self.root)
        self.assertEqual(lock.packages, {})
        self.assertEqual(lock.warnings, [])

    def test_write_then_read(self) -> None:
        entry = LockfileEntry(
            version="1.0.0",
            targets=["claude", "codex"],
            installed_at="2026-10-18T09:30:00Z",
            files={"claude": ["CLAUDE.md", ".claude\\commands\\x.md", "CLAUDE.md"], "codex": ["AGENTS.md"]},
            skills=[SkillLockEntry(repo="acme/starter", skill="review")],
        )
        path = write_lockfile(self.root, Lockfile(packages={"acme/starter": entry}))

        self.assertEqual(path, self.root / LOCKFILE_NAME)
        self.assertFalse((self.root / (LOCKFILE_NAME + ".tmp")).exists())

        loaded = read_lockfile(self.root).packages["acme/starter"]
        self.assertEqual(loaded.files["claude"], ["CLAUDE.md", ".claude/commands/x.md"])
        self.assertEqual(loaded.skills, [SkillLockEntry(repo="acme/starter", skill="review")])
        self.assertEqual(loaded.installed_at, "2026-10-18T09:30:00Z")

    def test_render_is_sorted_with_trailing_newline(self) -> None:
        lock = Lockfile(
            packages={
                "zeta/b": LockfileEntry(version="1", targets=["gemini"], installed_at="t"),
                "alpha/a": LockfileEntry(version="1", targets=["claude"], installed_at="t"),
            }
        )
        text = render_lockfile(lock)

        self.assertTrue(text.endswith("}\n"))
        self.assertLess(text.index("alpha/a"), text.index("zeta/b"))
        data = json.loads(text)
        self.assertEqual(data["version"], 1)
        self.assertEqual(data["packages"]["alpha/a"]["installedAt"], "t")
        self.assertEqual(data["packages"]["alpha/a"]["skills"], [])

    def test_corrupt_json_resets_with_warning(self) -> None:
        self._write_raw("{broken")
        lock = read_lockfile(self.root)
        self.assertEqual(lock.packages, {})
        self.assertEqual(len(lock.warnings), 1)
        self.assertIn("corrupted", lock.warnings[0])

    def test_undecodable_bytes_reset_with_warning(self) -> None:
        (self.root / LOCKFILE_NAME).write_bytes(b'{"version": 1, "packages": {}}\xff\xfe')
        lock = read_lockfile(self.root)
        self.assertEqual(lock.packages, {})
        self.assertEqual(len(lock.warnings), 1)
        self.assertIn("corrupted", lock.warnings[0])

    def test_wrong_shape_is_empty(self) -> None:
        self._write_raw({"version": 1, "packages": []})
        self.assertEqual(read_lockfile(self.root).packages, {})

    def test_invalid_entries_are_dropped_individually(self) -> None:
        good = {"version": "1", "targets": ["claude"], "installedAt": "t", "files": {"claude": ["CLAUDE.md"]}}
        self._write_raw(
            {
                "version": 1,
                "packages": {
                    "ok/pkg": good,
                    "bad/target": {**good, "targets": ["vim"]},
                    "bad/files": {**good, "files": {"codex": ["AGENTS.md"]}},
                    "bad/version": {**good, "version": 2},
                    "bad/skills": {**good, "skills": [{"repo": "x"}]},
                },
            }
        )
        lock = read_lockfile(self.root)

        self.assertEqual(list(lock.packages), ["ok/pkg"])
        self.assertEqual(len(lock.warnings), 4)
        self.assertTrue(any("bad/target" in w and "'vim'" in w for w in lock.warnings))

    def test_legacy_single_target_entry_is_migrated(self) -> None:
        self._write_raw(
            {
                "version": 1,
                "packages": {
                    "acme/old": {
                        "version": "0.9.0",
                        "target": "codex",
                        "installedAt": "2025-01-01T00:00:00Z",
                        "files": ["AGENTS.md", "utils/AGENTS.md"],
                    }
                },
            }
        )
        entry = read_lockfile(self.root).packages["acme/old"]

        self.assertEqual(entry.targets, ["codex"])
        self.assertEqual(entry.files, {"codex": ["AGENTS.md", "utils/AGENTS.md"]})
        self.assertEqual(entry.skills, [])

    def test_merge_skill_entries_dedupes_by_repo_and_name(self) -> None:
        a = SkillLockEntry(repo="acme/x", skill="review")
        b = SkillLockEntry(repo="acme/y", skill="review")
        merged = merge_skill_entries([a], [a, b])
        self.assertEqual(merged, [a, b])

    def test_utc_timestamp_format(self) -> None:
        self.assertRegex(utc_timestamp(), r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")


if __name__ == "__main__":
    unittest.main()
