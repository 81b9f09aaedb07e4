from __future__ import annotations

import argparse
import asyncio
import json
import sys
import textwrap
from pathlib import Path
from typing import Any

from ._version import __version__
from .client import GitHubSource, RegistryClient
from .config import Config, config_path, load_config, redact_token, resolve_config, save_config
from .errors import UpdoseError
from .prompts import TerminalDecider
from .sync import INSTALLED, REJECTED, SKIPPED, AddResult, BoilerplateManager, FileAction, UpdateResult


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _warn(message: str) -> None:
    print(f"warning: {message}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="updose",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="AI coding tool boilerplate installer.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              GITHUB_TOKEN, UPDOSE_API_URL, UPDOSE_TIMEOUT_S, UPDOSE_CONFIG_PATH
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--token", help="GitHub token (overrides config/env)")
        parser.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
        parser.add_argument("--cwd", default=".", help="Project root (default: .)")

    p.add_argument("--version", action="version", version=f"updose {__version__}")
    sub = p.add_subparsers(dest="cmd", required=True)

    add = sub.add_parser("add", help="Install a boilerplate")
    _add_runtime_overrides(add)
    add.add_argument("package", help="owner/repo or owner/repo/dir")
    add.add_argument("-y", "--yes", action="store_true", help="Skip all prompts and use defaults")
    add.add_argument("--dry-run", action="store_true", help="Preview install without writing files")

    update = sub.add_parser("update", help="Update installed boilerplates")
    _add_runtime_overrides(update)
    update.add_argument("package", nargs="?", default=None, help="Only update this package")
    update.add_argument("-y", "--yes", action="store_true", help="Skip all prompts and use defaults")
    update.add_argument("--dry-run", action="store_true", help="Preview update without writing files")

    outdated = sub.add_parser("outdated", help="Check for outdated boilerplates")
    _add_runtime_overrides(outdated)
    outdated.add_argument("--json", action="store_true", help="Output JSON")

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--github-token")
    cfg_set.add_argument("--registry-url")
    cfg_set.add_argument("--timeout-s", type=float)

    return p


def _load_config_with_warnings() -> Config:
    warnings: list[str] = []
    cfg = load_config(warnings=warnings)
    for w in warnings:
        _warn(w)
    return cfg


def _runtime_config(args: argparse.Namespace) -> Config:
    return resolve_config(_load_config_with_warnings(), github_token=args.token, timeout_s=args.timeout_s)


def _make_source(cfg: Config) -> GitHubSource:
    return GitHubSource(
        token=cfg.github_token,
        api_url=cfg.github_api_url,
        raw_url=cfg.raw_url,
        timeout_s=cfg.timeout_s,
    )


def _make_telemetry(cfg: Config) -> RegistryClient:
    return RegistryClient(base_url=cfg.registry_url)


def _print_file_action(action: FileAction) -> None:
    if action.status == INSTALLED:
        print(f"installed: {action.dest}")
    elif action.status == SKIPPED:
        print(f"skipped: {action.dest}")
    else:
        _warn(f"{action.dest}: {action.detail or action.status} (skipped)")


def _print_dry_run(files: tuple[FileAction, ...], skills: Any, *, verb: str) -> int:
    count = 0
    current_target: str | None = None
    for action in files:
        if action.target != current_target:
            current_target = action.target
            print(f"  [{current_target}]")
        if action.status == REJECTED:
            print(f"    {action.source_path} -> {action.dest} (rejected: {action.detail})")
            continue
        print(f"    {action.source_path} -> {action.dest}")
        count += 1
    if skills:
        print(f"Skills that would be {verb}:")
        for skill in skills:
            print(f"  {skill.label}")
    return count


async def _run_add(args: argparse.Namespace, cfg: Config) -> tuple[AddResult, list[str]]:
    source = _make_source(cfg)
    telemetry = _make_telemetry(cfg)
    try:
        manager = BoilerplateManager(
            project_root=Path(args.cwd),
            source=source,
            decider=None if args.yes else TerminalDecider(),
            telemetry=telemetry,
        )
        result = await manager.add(args.package, skip_prompts=args.yes, dry_run=args.dry_run)
        return result, list(source.warnings)
    finally:
        await source.aclose()
        await telemetry.aclose()


def cmd_add(args: argparse.Namespace) -> int:
    result, source_warnings = asyncio.run(_run_add(args, _runtime_config(args)))
    for w in [*result.warnings, *source_warnings]:
        _warn(w)

    if result.manifest is not None:
        m = result.manifest
        print(f"Found {m.name} by {m.author} (v{m.version})")
    if result.cancelled:
        print("Installation cancelled.")
        return 0
    if not result.files:
        return 0

    if result.dry_run:
        print("Dry run: the following files would be installed:")
        count = _print_dry_run(result.files, result.planned_skills, verb="installed")
        print(f"Dry run complete. {count} file(s) would be installed.")
        return 0

    for action in result.files:
        _print_file_action(action)
    for outcome in result.skills:
        if outcome.ok:
            print(f"skill installed: {outcome.skill.label}")
        else:
            _warn(f'Failed to install skill "{outcome.skill.label}": {outcome.error}')

    _print_table(
        [
            ["ACTION", "COUNT"],
            ["installed", str(result.installed_count)],
            ["skipped", str(result.skipped_count)],
            ["skills", str(result.skills_installed)],
            ["skill failures", str(len(result.skills_failed))],
        ]
    )
    if result.lock_path is not None:
        print(f"lock: {result.lock_path}")
    summary = f"{result.installed_count} file(s)"
    if result.skills_installed:
        summary += f" + {result.skills_installed} skill(s)"
    print(f"Done! {summary} installed, {result.skipped_count} skipped.")
    return 0


async def _run_update(args: argparse.Namespace, cfg: Config) -> tuple[UpdateResult, list[str]]:
    source = _make_source(cfg)
    try:
        manager = BoilerplateManager(
            project_root=Path(args.cwd),
            source=source,
            decider=None if args.yes else TerminalDecider(),
        )
        result = await manager.update(args.package, skip_prompts=args.yes, dry_run=args.dry_run)
        return result, list(source.warnings)
    finally:
        await source.aclose()


def cmd_update(args: argparse.Namespace) -> int:
    result, source_warnings = asyncio.run(_run_update(args, _runtime_config(args)))
    for w in [*result.warnings, *source_warnings]:
        _warn(w)

    if not result.packages:
        print("No boilerplates installed. Run `updose add <repo>` to install one.")
        return 0

    total_installed = 0
    total_skipped = 0
    for pkg in result.packages:
        if pkg.status == "failed":
            _warn(f"Failed to check {pkg.package_id}: {pkg.error}")
            continue
        if pkg.status == "up-to-date":
            print(f"{pkg.package_id} is up to date (v{pkg.current_version})")
            continue

        print(f"{pkg.package_id}: v{pkg.current_version} -> v{pkg.latest_version}")
        if result.dry_run:
            count = _print_dry_run(pkg.files, pkg.planned_skills, verb="updated")
            print(f"{count} file(s) would be updated for {pkg.package_id}.")
            continue
        for action in pkg.files:
            _print_file_action(action)
        for outcome in pkg.skills:
            if outcome.ok:
                print(f"skill updated: {outcome.skill.label}")
            else:
                _warn(f'Failed to update skill "{outcome.skill.label}": {outcome.error}')
        total_installed += pkg.installed_count
        total_skipped += pkg.skipped_count

    if result.dry_run:
        print("Dry run complete. No files were written.")
    elif result.updated:
        print(
            f"Updated {len(result.updated)} package(s). "
            f"{total_installed} file(s) installed, {total_skipped} skipped."
        )
    else:
        print("All packages are up to date.")
    return 0


async def _run_outdated(args: argparse.Namespace, cfg: Config):
    source = _make_source(cfg)
    try:
        manager = BoilerplateManager(project_root=Path(args.cwd), source=source)
        return await manager.outdated()
    finally:
        await source.aclose()


def cmd_outdated(args: argparse.Namespace) -> int:
    rows, warnings = asyncio.run(_run_outdated(args, _runtime_config(args)))
    for w in warnings:
        _warn(w)

    if args.json:
        payload = [
            {"package": r.package_id, "current": r.current, "latest": r.latest, "outdated": r.outdated, "error": r.error}
            for r in rows
        ]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    if not rows:
        print("No boilerplates installed. Run `updose add <repo>` to install one.")
        return 0

    table = [["PACKAGE", "CURRENT", "LATEST", "STATUS"]]
    for r in rows:
        if r.error is not None:
            status = f"error: {r.error}"
        else:
            status = "outdated" if r.outdated else "up to date"
        table.append([r.package_id, r.current, r.latest or "?", status])
    _print_table(table)

    outdated_count = sum(1 for r in rows if r.outdated)
    if outdated_count:
        print(f"{outdated_count} package(s) can be updated. Run `updose update` to update.")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = _load_config_with_warnings()
        d = cfg.__dict__.copy()
        d["github_token"] = redact_token(cfg.github_token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = _load_config_with_warnings()
        new_cfg = Config(
            github_token=args.github_token if args.github_token is not None else cfg.github_token,
            github_api_url=cfg.github_api_url,
            raw_url=cfg.raw_url,
            registry_url=args.registry_url or cfg.registry_url,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.cmd == "add":
            return cmd_add(args)
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd == "outdated":
            return cmd_outdated(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except UpdoseError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("error: interrupted", file=sys.stderr)
        return 130
    except Exception as e:  # noqa: BLE001
        print(f"error: unexpected {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
