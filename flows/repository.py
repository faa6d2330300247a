"""
Flow Repository — where compiled flow graphs come from.

Implementations:
  - InMemoryFlowRepository  (flows registered in code; tests, demos)
  - YamlFlowRepository      (flow documents in a YAML file or directory)
  - SqlFlowRepository       (chatbot_* tables, database/store.py)
  - RESTFlowRepository      (flow-authoring backend, backend/connector.py)

The engine never talks to a repository directly; it goes through the
FlowCache, which calls `load_flow` on a miss and `list_flows` when it
needs a connection's trigger catalog.
"""
from __future__ import annotations

import abc
import structlog
from pathlib import Path
from typing import Any, Optional

import yaml

from engine.errors import FlowNotFound
from flows.compiler import FlowGraph, compile_flow
from models.schemas import Flow

logger = structlog.get_logger()


class FlowRepository(abc.ABC):
    """Interface that all flow sources must implement."""

    @abc.abstractmethod
    async def load_flow(self, flow_id: str) -> FlowGraph:
        """Load and compile one flow. Raises FlowNotFound if it does not exist."""
        ...

    @abc.abstractmethod
    async def list_flows(self, connection_id: str) -> list[Flow]:
        """Metadata of every flow owned by a connection (active or not)."""
        ...


class InMemoryFlowRepository(FlowRepository):
    """Dict-backed repository. `add` accepts nested flow documents."""

    def __init__(self, documents: Optional[list[dict[str, Any]]] = None):
        self._graphs: dict[str, FlowGraph] = {}
        self.load_calls: dict[str, int] = {}
        for doc in documents or []:
            self.add(doc)

    def add(self, document: dict[str, Any]) -> FlowGraph:
        graph = compile_flow(document)
        self._graphs[graph.id] = graph
        logger.info("flow_registered", flow_id=graph.id,
                    connection_id=graph.flow.connection_id, nodes=len(graph.nodes))
        return graph

    def remove(self, flow_id: str) -> None:
        self._graphs.pop(flow_id, None)

    async def load_flow(self, flow_id: str) -> FlowGraph:
        self.load_calls[flow_id] = self.load_calls.get(flow_id, 0) + 1
        graph = self._graphs.get(flow_id)
        if graph is None:
            raise FlowNotFound(connection_id="", flow_id=flow_id)
        return graph

    async def list_flows(self, connection_id: str) -> list[Flow]:
        return [g.flow for g in self._graphs.values()
                if g.flow.connection_id == connection_id]


class YamlFlowRepository(InMemoryFlowRepository):
    """
    Loads flow documents from YAML.

    `path` may be a single file holding a list under `flows:` (or a bare
    list), or a directory of such files. Files are re-read by `reload()`.
    """

    def __init__(self, path: str):
        super().__init__()
        self._path = Path(path)
        self.reload()

    def reload(self) -> int:
        self._graphs.clear()
        files = sorted(self._path.glob("*.y*ml")) if self._path.is_dir() else [self._path]
        count = 0
        for file in files:
            for doc in self._read(file):
                self.add(doc)
                count += 1
        logger.info("yaml_flows_loaded", path=str(self._path), count=count)
        return count

    @staticmethod
    def _read(file: Path) -> list[dict[str, Any]]:
        if not file.exists():
            logger.warning("yaml_flow_file_missing", path=str(file))
            return []
        with open(file) as f:
            raw = yaml.safe_load(f) or []
        if isinstance(raw, dict):
            raw = raw.get("flows", [raw] if "nodes" in raw else [])
        return list(raw)
