"""
Backend Connector — flow definitions served by a flow-authoring backend.

The backend exposes two endpoints, configured in settings.yaml:

    backend:
      base_url: https://bots.example.com
      endpoints:
        list_flows: /api/chatbot/flows              # ?connection_id=...
        get_flow:   /api/chatbot/flows/{flow_id}     # nested flow document

`get_flow` returns the same nested document YAML flows use (a flow dict
with inline `nodes`), or the raw table shape `{flow, nodes, options,
actions}`; both are compiled by flows.compiler.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from pydantic import ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from config.settings import BackendConfig
from engine.errors import FlowNotFound
from flows.compiler import FlowGraph, compile_flow, compile_rows, parse_flow
from flows.repository import FlowRepository
from models.schemas import Flow

logger = structlog.get_logger()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class RESTFlowRepository(FlowRepository):
    """
    REST API flow source.
    Calls configured endpoints to fetch flow definitions.
    """

    def __init__(self, config: BackendConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.auth_type == "bearer":
                token = self.config.auth_credentials.get("token", "")
                headers["Authorization"] = f"Bearer {token}"
            elif self.config.auth_type == "api_key":
                key_name = self.config.auth_credentials.get("header_name", "X-API-Key")
                headers[key_name] = self.config.auth_credentials.get("api_key", "")

            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10),
           retry=retry_if_exception(_is_transient), reraise=True)
    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, endpoint)
        # Replace path parameters
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def load_flow(self, flow_id: str) -> FlowGraph:
        try:
            doc = await self._request("GET", "get_flow", path_params={"flow_id": flow_id})
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise FlowNotFound(connection_id="", flow_id=flow_id) from None
            logger.error("backend_fetch_flow_failed", flow_id=flow_id,
                         status=e.response.status_code)
            raise

        if isinstance(doc, dict) and "data" in doc and isinstance(doc["data"], dict):
            doc = doc["data"]
        if isinstance(doc, dict) and "flow" in doc:
            graph = compile_rows(doc["flow"], doc.get("nodes", []),
                                 doc.get("options", []), doc.get("actions", []))
        else:
            graph = compile_flow(doc)
        logger.info("backend_flow_loaded", flow_id=graph.id, nodes=len(graph.nodes))
        return graph

    async def list_flows(self, connection_id: str) -> list[Flow]:
        result = await self._request("GET", "list_flows", params={"connection_id": connection_id})
        rows = result if isinstance(result, list) else result.get("data", result.get("results", []))
        flows = []
        for raw in rows:
            try:
                flows.append(parse_flow(raw))
            except ValidationError as e:
                logger.warning("backend_flow_skipped", flow_id=raw.get("id"), error=str(e))
        return [f for f in flows if f.connection_id == connection_id]

    async def close(self):
        if self.client:
            await self.client.aclose()
