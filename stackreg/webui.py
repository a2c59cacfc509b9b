"""FastAPI read-only catalog API over the registry."""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException

from .config import ProjectConfig
from .constants import LOCK_FILENAME
from .errors import ServiceNotFoundError
from .lock import LockManager
from .registry import Registry, load_registry

logger = logging.getLogger(__name__)


@dataclass
class WebState:
    registry: Optional[Registry] = None
    project_config: Optional[ProjectConfig] = None
    lock_path: Path = Path(LOCK_FILENAME)
    # Serializes resolve and verify; handlers run on the threadpool.
    resolve_lock: threading.Lock = field(default_factory=threading.Lock)


STATE = WebState()
app = FastAPI(title="stackreg catalog")


def configure(
    registry: Optional[Registry] = None,
    project_config: Optional[ProjectConfig] = None,
    lock_path: Optional[Path] = None,
) -> None:
    STATE.registry = registry
    STATE.project_config = project_config
    if lock_path is not None:
        STATE.lock_path = Path(lock_path)


def _registry() -> Registry:
    if STATE.registry is None:
        STATE.registry = load_registry()
    return STATE.registry


def _project_config() -> ProjectConfig:
    if STATE.project_config is None:
        STATE.project_config = ProjectConfig()
    return STATE.project_config


@app.get("/api/services")
def list_services(q: str = "", category: str = "", tag: str = "") -> dict:
    services = _registry().search_services(q, category, tag)
    return {"services": [asdict(s) for s in services]}


@app.get("/api/services/{name}")
def get_service(name: str) -> dict:
    try:
        definition, source = _registry().get_service(name)
    except ServiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"source": source, "definition": definition.model_dump(mode="json", by_alias=True, exclude_none=True)}


@app.get("/api/sources")
def list_sources() -> dict:
    return {"sources": _registry().source_details()}


@app.get("/api/resolve")
def resolve() -> dict:
    with STATE.resolve_lock:
        graph = _registry().resolve(_project_config())
    return {
        "order": graph.order,
        "services": {
            name: {
                "source": svc.source,
                "sourcePath": svc.source_path,
                "hash": svc.definition_hash,
                "dependencies": svc.dependencies,
                "enabled": svc.enabled,
            }
            for name, svc in graph.services.items()
        },
        "errors": [str(e) for e in graph.errors],
    }


@app.get("/api/lock/verify")
def verify_lock() -> dict:
    if not STATE.lock_path.exists():
        raise HTTPException(status_code=404, detail=f"Lock file {STATE.lock_path} not found.")
    manager = LockManager(_registry())
    lock = manager.load_lock_file(STATE.lock_path)
    with STATE.resolve_lock:
        results = manager.verify(_project_config(), lock)
    return {"inSync": not results, "results": [asdict(r) for r in results]}


def run(host: str = "127.0.0.1", port: int = 8001) -> None:
    """Launch the catalog API using uvicorn."""
    logger.info("Starting stackreg catalog API on %s:%s", host, port)
    uvicorn.run("stackreg.webui:app", host=host, port=port, reload=False)


if __name__ == "__main__":  # pragma: no cover
    run()
