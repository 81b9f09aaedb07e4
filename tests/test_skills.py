import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

from updose.client import TreeEntry
from updose.errors import InvalidManifestError, SkillCommandError, UnsafeCommandError, UpdoseError
from updose.skills import (
    Skill,
    build_skill_command,
    install_skill,
    install_skills,
    parse_skills,
    run_skill_command,
    settled_pool,
    validate_command,
)


class _Files:
    """Minimal bundle source serving a dict of files."""

    def __init__(self, files: dict[str, str]) -> None:
        self.files = files
        self.fetched: list[str] = []

    def tree(self) -> list[TreeEntry]:
        return [TreeEntry(path=p, type="blob") for p in self.files]

    async def fetch_file(self, package_id: str, path: str) -> str | None:
        self.fetched.append(path)
        return self.files.get(path)


class TestParseSkills(unittest.TestCase):
    def test_valid_and_invalid_entries(self) -> None:
        skills = parse_skills(
            {
                "skills": [
                    {"name": "review", "description": "Code review", "path": "skills/review"},
                    {"name": "ext", "path": "skills/ext", "repo": "other/skills"},
                    {"name": "../evil", "path": "skills/evil"},
                    {"name": "nopath"},
                    "junk",
                ]
            }
        )
        self.assertEqual([s.name for s in skills], ["review", "ext"])
        self.assertEqual(skills[0].description, "Code review")
        self.assertIsNone(skills[0].repo)
        self.assertEqual(skills[1].label, "other/skills > ext")

    def test_document_shape_errors(self) -> None:
        for raw in ([], {"skills": {}}, {}):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidManifestError):
                    parse_skills(raw)


class TestSkillCommand(unittest.TestCase):
    def test_build_skill_command(self) -> None:
        skill = Skill(name="review", description="", path="review", repo="other/skills")
        self.assertEqual(
            build_skill_command(skill, ["claude-code", "codex"]),
            [
                "npx",
                "skills",
                "add",
                "https://github.com/other/skills",
                "--skill",
                "review",
                "-a",
                "claude-code",
                "codex",
                "--copy",
                "-y",
            ],
        )

    def test_build_requires_repo(self) -> None:
        with self.assertRaises(UpdoseError):
            build_skill_command(Skill(name="review", description="", path="review"), ["codex"])

    def test_validate_command_rejects_unsafe_tokens(self) -> None:
        for argv in (
            [],
            ["npx", ""],
            ["npx", "skills; rm -rf /"],
            ["npx", "$(whoami)"],
            ["npx", "a|b"],
            ["npx", "line\nbreak"],
            ["npx", "`id`"],
        ):
            with self.subTest(argv=argv):
                with self.assertRaises(UnsafeCommandError):
                    validate_command(argv)

    def test_validate_command_accepts_plain_tokens(self) -> None:
        validate_command(["npx", "skills", "add", "https://github.com/a/b", "--skill", "x-y_z", "-y"])


class TestRunSkillCommand(unittest.IsolatedAsyncioTestCase):
    async def test_unsafe_command_never_spawns(self) -> None:
        with patch("updose.skills.asyncio.create_subprocess_exec") as spawn:
            with self.assertRaises(UnsafeCommandError):
                await run_skill_command(["npx", "a&&b"], Path("."))
        spawn.assert_not_called()

    async def test_missing_executable(self) -> None:
        with patch("updose.skills.shutil.which", return_value=None):
            with self.assertRaises(UpdoseError) as ctx:
                await run_skill_command(["npx", "skills"], Path("."))
        self.assertIn("not found on PATH", str(ctx.exception))

    async def test_non_zero_exit_raises_with_stderr(self) -> None:
        proc = AsyncMock()
        proc.communicate.return_value = (b"", b"npm ERR! 404\n")
        proc.returncode = 1
        with patch("updose.skills.shutil.which", return_value="/usr/bin/npx"), patch(
            "updose.skills.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)
        ) as spawn:
            with self.assertRaises(SkillCommandError) as ctx:
                await run_skill_command(["npx", "skills", "add"], Path("/tmp/project"))

        self.assertEqual(str(ctx.exception), "npm ERR! 404")
        args, kwargs = spawn.call_args
        self.assertEqual(args, ("/usr/bin/npx", "skills", "add"))
        self.assertEqual(kwargs["cwd"], str(Path("/tmp/project")))


class TestSettledPool(unittest.IsolatedAsyncioTestCase):
    async def test_results_in_order_with_failures_isolated(self) -> None:
        async def ok(value: int) -> int:
            await asyncio.sleep(0.01 * (5 - value))
            return value

        async def boom() -> int:
            raise RuntimeError("boom")

        tasks = [lambda: ok(1), lambda: ok(2), boom, lambda: ok(4), lambda: ok(5)]
        results = await settled_pool(tasks, 2)

        self.assertEqual(results[:2], [1, 2])
        self.assertIsInstance(results[2], RuntimeError)
        self.assertEqual(results[3:], [4, 5])

    async def test_limit_bounds_concurrency(self) -> None:
        in_flight = 0
        peak = 0

        async def task() -> None:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1

        await settled_pool([task] * 12, 5)
        self.assertEqual(peak, 5)

    async def test_empty(self) -> None:
        self.assertEqual(await settled_pool([], 5), [])


class TestInstallSkill(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)

    def tearDown(self) -> None:
        self._td.cleanup()

    async def test_directory_skill_installs_per_target(self) -> None:
        source = _Files(
            {
                "skills/review/SKILL.md": "# Review\n",
                "skills/review/scripts/run.sh": "echo\n",
                "skills/review/.gitkeep": "",
                "skills/reviewer/SKILL.md": "other\n",
            }
        )
        skill = Skill(name="review", description="", path="skills/review")

        written = await install_skill(
            source=source,
            package_id="acme/starter",
            skill=skill,
            target="codex",
            project_root=self.root,
            tree=source.tree(),
            skip_prompts=True,
        )

        self.assertEqual(written, [".agents/skills/review/SKILL.md", ".agents/skills/review/scripts/run.sh"])
        self.assertEqual((self.root / ".agents/skills/review/scripts/run.sh").read_text(encoding="utf-8"), "echo\n")
        self.assertNotIn("skills/reviewer/SKILL.md", source.fetched)

    async def test_legacy_single_file_skill(self) -> None:
        source = _Files({"skills/review.md": "# Review\n"})
        skill = Skill(name="review", description="", path="skills/review.md")

        written = await install_skill(
            source=source,
            package_id="acme/starter",
            skill=skill,
            target="gemini",
            project_root=self.root,
            tree=source.tree(),
            skip_prompts=True,
        )

        self.assertEqual(written, [".gemini/skills/review/SKILL.md"])
        self.assertEqual((self.root / ".gemini/skills/review/SKILL.md").read_text(encoding="utf-8"), "# Review\n")

    async def test_missing_skill_raises(self) -> None:
        source = _Files({})
        with self.assertRaises(UpdoseError) as ctx:
            await install_skill(
                source=source,
                package_id="acme/starter",
                skill=Skill(name="gone", description="", path="skills/gone"),
                target="claude",
                project_root=self.root,
                tree=[],
                skip_prompts=True,
            )
        self.assertEqual(str(ctx.exception), "Skill not found in repo: skills/gone")


class TestInstallSkills(unittest.IsolatedAsyncioTestCase):
    async def test_one_failure_out_of_five(self) -> None:
        calls: list[list[str]] = []

        async def runner(argv, cwd) -> None:
            calls.append(list(argv))
            if "s3" in argv:
                raise SkillCommandError(1, "")

        skills = [Skill(name=f"s{i}", description="", path=f"s{i}", repo="other/skills") for i in range(1, 6)]
        with tempfile.TemporaryDirectory() as td:
            outcomes = await install_skills(
                source=_Files({}),
                package_id="acme/starter",
                skills=skills,
                targets=["claude", "gemini"],
                project_root=Path(td),
                tree=[],
                skip_prompts=True,
                runner=runner,
            )

        self.assertEqual([o.ok for o in outcomes], [True, True, False, True, True])
        self.assertEqual(outcomes[2].error, "skill installer exited with status 1")
        self.assertEqual(len(calls), 5)
        self.assertIn("claude-code", calls[0])
        self.assertIn("gemini-cli", calls[0])

    async def test_conflict_prompts_from_workers_never_overlap(self) -> None:
        class _Decider:
            def __init__(self) -> None:
                self.active = 0
                self.peak = 0
                self.paths: list[str] = []

            def choose_conflict_strategy(self, path, is_main_doc):
                self.active += 1
                self.peak = max(self.peak, self.active)
                self.paths.append(path)
                self.active -= 1
                return "overwrite"

            def choose_targets(self, available):
                return list(available)

        files = {f"skills/s{i}/SKILL.md": f"new {i}\n" for i in range(1, 6)}
        source = _Files(files)
        decider = _Decider()
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            for i in range(1, 6):
                existing = root / f".claude/skills/s{i}/SKILL.md"
                existing.parent.mkdir(parents=True)
                existing.write_text("old\n", encoding="utf-8")

            outcomes = await install_skills(
                source=source,
                package_id="acme/starter",
                skills=[Skill(name=f"s{i}", description="", path=f"skills/s{i}") for i in range(1, 6)],
                targets=["claude"],
                project_root=root,
                tree=source.tree(),
                skip_prompts=False,
                decider=decider,
            )
            contents = [(root / f".claude/skills/s{i}/SKILL.md").read_text(encoding="utf-8") for i in range(1, 6)]

        self.assertTrue(all(o.ok for o in outcomes))
        self.assertEqual(decider.peak, 1)
        self.assertEqual(len(decider.paths), 5)
        self.assertEqual(contents, [f"new {i}\n" for i in range(1, 6)])

    async def test_directory_skills_report_files_per_target(self) -> None:
        source = _Files({"skills/review/SKILL.md": "x"})
        with tempfile.TemporaryDirectory() as td:
            outcomes = await install_skills(
                source=source,
                package_id="acme/starter",
                skills=[Skill(name="review", description="", path="skills/review")],
                targets=["claude", "codex"],
                project_root=Path(td),
                tree=source.tree(),
                skip_prompts=True,
            )

        self.assertEqual(
            outcomes[0].files,
            {"claude": (".claude/skills/review/SKILL.md",), "codex": (".agents/skills/review/SKILL.md",)},
        )


if __name__ == "__main__":
    unittest.main()
