"""Command line interface for the service registry."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, List

from . import __version__
from .config import load_project_config
from .constants import DEFAULT_BRANCH, EMBEDDED_SOURCE_NAME, LOCK_FILENAME, OFFICIAL_SOURCE_NAME, SOURCE_TYPE_GIT
from .loader import load_service_definition, serialize_definition
from .lock import LockManager
from .models import Source
from .registry import load_registry
from .validator import has_errors

DEFAULT_PROJECT_CONFIG = Path("stackreg.yaml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stackreg",
        description="Browse, resolve and lock service definitions from prioritized sources.",
    )
    parser.add_argument("--sources", type=Path, help="Source configuration file (kind: SourceConfig).")
    parser.add_argument(
        "--project-config",
        type=Path,
        default=DEFAULT_PROJECT_CONFIG,
        help="Project settings used for resolution.",
    )
    parser.add_argument("--lock-file", type=Path, default=Path(LOCK_FILENAME), help="Lock file path.")
    parser.add_argument("--json", action="store_true", help="Print machine-readable output.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")

    sub = parser.add_subparsers(dest="command", required=True)

    list_cmd = sub.add_parser("list", help="List available services.")
    list_cmd.add_argument("--category", default="", help="Only show this category.")
    list_cmd.add_argument("--tag", default="", help="Only show services with this tag.")

    search_cmd = sub.add_parser("search", help="Search services by name, description or category.")
    search_cmd.add_argument("query")
    search_cmd.add_argument("--category", default="")
    search_cmd.add_argument("--tag", default="")

    info_cmd = sub.add_parser("info", help="Show the winning definition of a service.")
    info_cmd.add_argument("name")

    validate_cmd = sub.add_parser("validate", help="Validate a service definition file.")
    validate_cmd.add_argument("file", type=Path)
    validate_cmd.add_argument("--trust-level", default="", help="Named trust level from the source config.")

    sub.add_parser("resolve", help="Resolve the project's services and print the install order.")
    sources_cmd = sub.add_parser("sources", help="List, add, remove or inspect sources.")
    sources_sub = sources_cmd.add_subparsers(dest="action")
    sources_sub.add_parser("list", help="List configured sources (default).")
    add_cmd = sources_sub.add_parser("add", help="Add a git source and save it to the source config.")
    add_cmd.add_argument("name")
    add_cmd.add_argument("url")
    add_cmd.add_argument("-p", "--priority", type=int, default=10, help="Higher is checked first.")
    add_cmd.add_argument("-b", "--branch", default=DEFAULT_BRANCH)
    add_cmd.add_argument("--path", default="", help="Sub-directory holding the services.")
    add_cmd.add_argument("--ssh-key", default="", help="Private key for SSH remotes.")
    remove_cmd = sources_sub.add_parser("remove", help="Remove a source from the source config.")
    remove_cmd.add_argument("name")
    info_src_cmd = sources_sub.add_parser("info", help="Show one source and the services it provides.")
    info_src_cmd.add_argument("name")
    sources_sub.add_parser("check", help="Fetch git sources and report commits not yet pulled.")

    update_cmd = sub.add_parser("update", help="Refresh sources from their origin.")
    update_cmd.add_argument("name", nargs="?", help="Only refresh this source.")

    cache_cmd = sub.add_parser("cache", help="Inspect or clear the source cache.")
    cache_cmd.add_argument("action", choices=["info", "clear"])
    cache_cmd.add_argument("name", nargs="?", help="Source to clear; all when omitted.")

    lock_cmd = sub.add_parser("lock", help="Generate, verify, diff or update the lock file.")
    lock_cmd.add_argument("action", nargs="?", choices=["generate", "verify", "diff", "update"], default="generate")
    lock_cmd.add_argument("services", nargs="*", help="With update: only refresh these services.")

    serve_cmd = sub.add_parser("serve", help="Serve the read-only catalog API.")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8001)
    return parser


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _emit(args: argparse.Namespace, payload: Any, text: str) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def _cmd_list(args, registry) -> int:
    if args.command == "search":
        services = registry.search_services(args.query, args.category, args.tag)
    else:
        services = registry.search_services("", args.category, args.tag)
    rows = [f"{s.name:<20} {s.category:<12} {s.version:<10} {s.source:<12} {s.description}" for s in services]
    _emit(args, [asdict(s) for s in services], "\n".join(rows) if rows else "No services found")
    return 0


def _cmd_info(args, registry) -> int:
    definition, source = registry.get_service(args.name)
    payload = {"source": source, "definition": definition.model_dump(mode="json", by_alias=True)}
    _emit(args, payload, f"# source: {source}\n{serialize_definition(definition)}")
    return 0


def _cmd_validate(args, registry) -> int:
    definition = load_service_definition(args.file)
    issues = registry.validate(definition, args.trust_level or None)
    lines = [f"{issue.severity.upper():<8} {issue.field}: {issue.message}" for issue in issues]
    _emit(args, [asdict(i) for i in issues], "\n".join(lines) if lines else f"{args.file}: valid")
    return 1 if has_errors(issues) else 0


def _cmd_resolve(args, registry) -> int:
    graph = registry.resolve(load_project_config(args.project_config))
    payload = {
        "order": graph.order,
        "services": {
            name: {
                "source": svc.source,
                "hash": svc.definition_hash,
                "dependencies": svc.dependencies,
                "overrides": len(svc.overrides),
            }
            for name, svc in graph.services.items()
        },
        "errors": [str(e) for e in graph.errors],
    }
    lines = [f"{i + 1:>3}. {name} ({graph.services[name].source})" for i, name in enumerate(graph.order)]
    lines.extend(f"error: {e}" for e in graph.errors)
    _emit(args, payload, "\n".join(lines) if lines else "Nothing to install")
    return 1 if graph.errors else 0


def _cmd_sources(args, registry) -> int:
    action = args.action or "list"

    if action == "add":
        source = Source(
            name=args.name,
            type=SOURCE_TYPE_GIT,
            url=args.url,
            branch=args.branch,
            path=args.path,
            ssh_key=args.ssh_key,
            priority=args.priority,
            enabled=True,
        )
        registry.add_source(source)
        path = registry.save_config()
        _emit(args, {"added": args.name, "config": str(path)},
              f"Added source {args.name}; run 'stackreg update {args.name}' to fetch it")
        return 0

    if action == "remove":
        if args.name in (OFFICIAL_SOURCE_NAME, EMBEDDED_SOURCE_NAME):
            logging.error("Cannot remove built-in source %s", args.name)
            return 1
        registry.remove_source(args.name)
        path = registry.save_config()
        _emit(args, {"removed": args.name, "config": str(path)}, f"Removed source {args.name}")
        return 0

    if action == "info":
        info = registry.source_info(args.name)
        lines = [f"{key}: {value}" for key, value in info.items() if key != "services"]
        lines.append(f"services ({len(info['services'])}):")
        lines.extend(f"  - {name}" for name in info["services"])
        _emit(args, info, "\n".join(lines))
        return 0

    if action == "check":
        pending = registry.check_updates()
        lines = [f"{name:<12} {count} new commit(s)" for name, count in sorted(pending.items())]
        _emit(args, pending, "\n".join(lines) if lines else "No git sources configured")
        return 0

    rows = registry.source_details()
    lines = [f"{r['name']:<12} {r['type']:<9} priority={r['priority']:<4} enabled={r['enabled']}" for r in rows]
    _emit(args, rows, "\n".join(lines))
    return 0


def _cmd_update(args, registry) -> int:
    if args.name:
        registry.update_source(args.name)
        _emit(args, {"updated": [args.name]}, f"Updated source {args.name}")
        return 0
    registry.update()
    _emit(args, {"updated": [p.name for p in registry.sources()]}, "All sources updated")
    return 0


def _cmd_cache(args, registry) -> int:
    cache = registry.cache
    if args.action == "clear":
        if args.name:
            cache.clear(args.name)
        else:
            cache.clear_all()
        _emit(args, {"cleared": args.name or "all"}, f"Cleared cache for {args.name or 'all sources'}")
        return 0

    metadata = cache.get_metadata()
    payload = {
        "directory": str(cache.base_dir),
        "size": cache.get_size(),
        "sources": {name: meta.model_dump(mode="json") for name, meta in metadata.items()},
    }
    lines = [f"Directory: {cache.base_dir}", f"Size: {payload['size']} bytes"]
    for name, meta in sorted(metadata.items()):
        stale = " (stale)" if cache.needs_update(name) else ""
        lines.append(f"  {name:<12} {meta.commit[:12]:<12} {meta.last_updated}{stale}")
    _emit(args, payload, "\n".join(lines))
    return 0


def _cmd_lock(args, registry) -> int:
    manager = LockManager(registry, cli_version=__version__)
    config = load_project_config(args.project_config)

    if args.action == "generate":
        lock = manager.generate_lock_file(config, output_path=args.lock_file)
        _emit(args, {"path": str(args.lock_file), "services": sorted(lock.services)},
              f"Locked {len(lock.services)} services to {args.lock_file}")
        return 0

    if args.action == "update":
        existing = manager.load_lock_file(args.lock_file) if args.lock_file.exists() else None
        lock = manager.update(config, existing, services=args.services, output_path=args.lock_file)
        _emit(args, {"path": str(args.lock_file), "services": sorted(lock.services)},
              f"Updated {args.lock_file} ({len(lock.services)} services)")
        return 0

    lock = manager.load_lock_file(args.lock_file)
    if args.action == "verify":
        results = manager.verify(config, lock)
        lines = [f"{r.status:<8} {r.type:<8} {r.name:<16} {r.message}" for r in results]
        _emit(args, [asdict(r) for r in results], "\n".join(lines) if lines else "Lock file is up to date")
        return 1 if results else 0

    diff = manager.diff(config, lock)
    _emit(args, asdict(diff), diff.summary())
    return 1 if diff.has_changes() else 0


def _cmd_serve(args, registry) -> int:
    from . import webui

    webui.configure(registry, load_project_config(args.project_config), args.lock_file)
    webui.run(host=args.host, port=args.port)
    return 0


COMMANDS = {
    "list": _cmd_list,
    "search": _cmd_list,
    "info": _cmd_info,
    "validate": _cmd_validate,
    "resolve": _cmd_resolve,
    "sources": _cmd_sources,
    "update": _cmd_update,
    "cache": _cmd_cache,
    "lock": _cmd_lock,
    "serve": _cmd_serve,
}


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        registry = load_registry(args.sources)
        return COMMANDS[args.command](args, registry)
    except Exception as exc:  # pragma: no cover - protects CLI UX
        logging.error("stackreg %s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
