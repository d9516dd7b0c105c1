#!/usr/bin/env python3
"""
recreate_package.py
===================
Rebuild an installable pacman package from the files a package installed on
this system.

Usage:
    python tools/recreate_package.py <package_name>
    python tools/recreate_package.py demo --no-sudo --clean --json
    python tools/recreate_package.py --doctor
"""

import argparse
import contextlib
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from cli_runtime import (
    doctor_checks,
    resolve_repo_root,
    version_result,
    write_json_private_default,
)

CLI_SCHEMA_VERSION = "recreate.package.cli.v1"
TOOL = "recreate_package"
CLEANUP_PROMPT = "Do you want to remove temporary files? [y/N]: "
EXIT_CANCELLED = 130

# Resolve api/ import path
REPO_ROOT = resolve_repo_root(__file__)
API_DIR = str(REPO_ROOT / "api")
if API_DIR not in sys.path:
    sys.path.insert(0, API_DIR)

from pkgrecreate.config import load_config  # noqa: E402
from pkgrecreate.context import Reporter, RunContext  # noqa: E402
from pkgrecreate.contracts import PackageRequest  # noqa: E402
from pkgrecreate.errors import PipelineCancelled, RecreateError, UsageError  # noqa: E402
from pkgrecreate.pipeline import RecreatePipeline  # noqa: E402


def _emit_cli_json(payload: Dict, enabled: bool, json_file: Optional[Path]) -> None:
    if json_file:
        write_json_private_default(json_file, payload)
    if enabled:
        print(json.dumps(payload, indent=2, default=str))


def _payload(command: str, ok: bool, package: Optional[str], **body: Any) -> Dict[str, Any]:
    payload = {
        "schema_version": CLI_SCHEMA_VERSION,
        "tool": TOOL,
        "command": command,
        "ok": bool(ok),
        "package": package,
    }
    payload.update(body)
    return payload


def _fail(
    args: argparse.Namespace,
    json_file: Optional[Path],
    exc: BaseException,
    *,
    command: str = "recreate",
    exit_code: int = 1,
) -> int:
    if args.json or json_file:
        payload = _payload(
            command,
            False,
            args.package,
            error=getattr(exc, "message", str(exc)),
            error_type=exc.__class__.__name__,
            suggestion=getattr(exc, "suggestion", None),
        )
        _emit_cli_json(payload, enabled=args.json, json_file=json_file)
    if not args.json:
        print(f"[ERROR] {exc}", file=sys.stderr)
    return exit_code


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="recreate_package.py",
        description="Recreate a pacman package archive from its installed files.",
    )
    ap.add_argument("package", nargs="?", help="Name of the installed package")
    ap.add_argument("--version", action="store_true", help="Print build info and exit")
    ap.add_argument("--doctor", action="store_true", help="Check host prerequisites and exit")
    ap.add_argument("--config", default=None, help="JSON or YAML config file")
    ap.add_argument("--work-root", default=None, help="Staging root (default: ~/recreate_package)")
    ap.add_argument("--output-dir", default=None, help="Archive directory (default: ~/recreated_packages)")
    ap.add_argument("--source-root", default=None, help="Filesystem root the installed files are read from")
    ap.add_argument("--no-sudo", action="store_true", help="Copy files in-process instead of through sudo")
    ap.add_argument("--level", type=int, default=None, help="zstd compression level (1-22)")
    ap.add_argument("--workers", type=int, default=None, help="Parallel copy workers")
    ap.add_argument("--max-copy-failures", type=int, default=None, help="Tolerated copy failures")
    ap.add_argument("--fail-fast", action="store_true", help="Abort staging on the first copy failure")
    ap.add_argument("--allow-empty", action="store_true", help="Build a package even when it owns no files")
    ap.add_argument("--ownership", choices=["preserve", "root"], default=None, help="Owner recorded in the archive")
    ap.add_argument("--arch", default=None, help="Override the architecture field")
    ap.add_argument("--no-deep-verify", action="store_true", help="Only check the archive exists and is non-empty")
    cleanup = ap.add_mutually_exclusive_group()
    cleanup.add_argument("--keep", action="store_true", help="Keep the staging tree without asking")
    cleanup.add_argument("--clean", action="store_true", help="Remove the staging tree without asking")
    ap.add_argument("--quiet", action="store_true", help="Suppress progress lines")
    ap.add_argument(
        "--json",
        action="store_true",
        help="Emit machine-readable JSON to stdout (progress goes to stderr).",
    )
    ap.add_argument(
        "--json-file",
        default=None,
        help="Optional path to write the same machine-readable JSON result.",
    )
    return ap


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "work_root": args.work_root,
        "output_dir": args.output_dir,
        "source_root": args.source_root,
        "use_sudo": False if args.no_sudo else None,
        "zstd_level": args.level,
        "copy_workers": args.workers,
        "max_copy_failures": args.max_copy_failures,
        "fail_fast": True if args.fail_fast else None,
        "allow_empty": True if args.allow_empty else None,
        "ownership": args.ownership,
        "arch": args.arch,
        "deep_verify": False if args.no_deep_verify else None,
    }


def _should_clean(args: argparse.Namespace) -> bool:
    if args.clean:
        return True
    if args.keep or args.json or not sys.stdin.isatty():
        return False
    try:
        answer = input(CLEANUP_PROMPT)
    except EOFError:
        return False
    return answer.strip() in ("y", "Y")


def main(argv=None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    json_file = Path(args.json_file).resolve() if args.json_file else None

    if args.version:
        result = version_result(tool=TOOL, repo_root=REPO_ROOT)
        _emit_cli_json(_payload("version", True, None, result=result), enabled=args.json, json_file=json_file)
        if not args.json:
            build = result["build"]
            print(f"recreate-package {build['recreate_version']} ({build['system']}/{build['machine']})")
        return 0

    try:
        config = load_config(args.config, _overrides(args))
    except RecreateError as exc:
        return _fail(args, json_file, exc, command="doctor" if args.doctor else "recreate")

    if args.doctor:
        result = doctor_checks(
            tool=TOOL,
            repo_root=REPO_ROOT,
            pacman_cmd=config.pacman_cmd,
            sudo_cmd=config.sudo_cmd if config.use_sudo else None,
            work_root=config.work_root,
            output_dir=config.output_dir,
        )
        ok = bool(result["summary"]["ok"])
        _emit_cli_json(_payload("doctor", ok, None, result=result), enabled=args.json, json_file=json_file)
        if not args.json:
            summary = result["summary"]
            print(
                f"[doctor] ok={summary['ok']} "
                f"passed={summary['checks_passed']}/{summary['checks_total']} "
                f"errors={summary['errors']} warnings={summary['warnings']}"
            )
            for row in result["checks"]:
                if not row["ok"]:
                    print(f"  - {row['name']}: {row.get('detail') or row.get('cmd') or 'failed'}")
        return 0 if ok else 1

    if not args.package:
        if not args.json:
            print("Error: No package name provided.", file=sys.stderr)
            ap.print_usage(sys.stderr)
        return _fail(args, json_file, UsageError("No package name provided."))

    try:
        request = PackageRequest(name=args.package)
    except ValidationError:
        return _fail(args, json_file, UsageError(f"Invalid package name: {args.package!r}"))

    reporter = Reporter(verbose=not args.quiet, stream=sys.stderr if args.json else None)
    ctx = RunContext.create(request, config, reporter=reporter)
    pipeline = RecreatePipeline(ctx)

    redirect = contextlib.redirect_stdout(sys.stderr) if args.json else contextlib.nullcontext()
    try:
        with redirect:
            result = pipeline.run()
    except KeyboardInterrupt:
        ctx.cancel.cancel()
        ctx.event("run_cancelled", stage="interrupt")
        pipeline.remove_staging()
        return _fail(args, json_file, PipelineCancelled("interrupt"), exit_code=EXIT_CANCELLED)
    except PipelineCancelled as exc:
        return _fail(args, json_file, exc, exit_code=EXIT_CANCELLED)
    except RecreateError as exc:
        return _fail(args, json_file, exc)
    except OSError as exc:
        return _fail(args, json_file, exc)

    cleaned = _should_clean(args) and pipeline.remove_staging()
    if cleaned and not args.json:
        reporter.emit("OK", f"Temporary files removed: {ctx.staging_dir}")

    body = result.to_dict()
    body["staging_removed"] = bool(cleaned)
    _emit_cli_json(_payload("recreate", True, ctx.name, result=body), enabled=args.json, json_file=json_file)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
