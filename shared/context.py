"""
Standalone execution context for running drafting nodes.

Nodes are written against the workflow engine's ctx interface:
get_secret / get_config / report_input / report_output. NodeContext
implements that interface for scripts, services and tests that run the
nodes outside the engine.
"""
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog
from dotenv import dotenv_values

logger = structlog.get_logger()


class NodeContext:
    """
    Minimal ctx for running nodes directly.

    Secrets resolve from the process environment first, then from a .env
    file (team secrets). Set DRAFTING_DISABLE_DOTENV=1 to skip the file.

    Usage:
        ctx = NodeContext(config={"article_style": "..."})
        output = await generate_article(ctx, GenerateArticleInput(...))
    """

    def __init__(
        self,
        secrets: Optional[Mapping[str, str]] = None,
        config: Optional[Mapping[str, Any]] = None,
        env_file: Optional[Path] = Path(".env"),
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._secrets: Dict[str, str] = {}
        if env_file is not None and os.environ.get("DRAFTING_DISABLE_DOTENV") != "1":
            if env_file.exists():
                self._secrets.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
        if secrets:
            self._secrets.update(secrets)
        self._config: Dict[str, Any] = dict(config or {})
        self.http_client = http_client
        self.inputs: List[dict] = []
        self.outputs: List[dict] = []

    def get_secret(self, name: str) -> Optional[str]:
        value = os.environ.get(name)
        if value:
            return value
        return self._secrets.get(name) or None

    def get_config(self, key: str) -> Any:
        return self._config.get(key)

    def report_input(self, data: dict) -> None:
        self.inputs.append(data)
        logger.debug("node_input", keys=sorted(data.keys()))

    def report_output(self, data: dict) -> None:
        self.outputs.append(data)
        logger.debug("node_output", status=data.get("status"), keys=sorted(data.keys()))
