"""Local-only model file access.

The local embedding and reranking tiers must never reach the network. Model
files are read through an HTTP client whose only transport serves `file://`
URLs inside the model cache directory; any other request is rejected.
"""

import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from knowledge_engine.core.errors import KnowledgeEngineError

logger = logging.getLogger(__name__)

# httpx treats a hostless `file:///path` URL as relative and drops the scheme,
# so cache URLs always name this host
CACHE_HOST = "localhost"


class OfflineViolationError(KnowledgeEngineError):
    """A local-only component attempted a request outside the model cache."""


class ModelFilesMissingError(KnowledgeEngineError):
    """Required model files are not present in the model cache."""


class LocalFileTransport(httpx.BaseTransport):
    """Serves files under `root` for `file://` URLs and rejects everything else."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser().resolve()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        url = request.url
        if url.scheme != "file" or url.host != CACHE_HOST:
            logger.error(f"[Offline] Blocked outbound request to {url}")
            raise OfflineViolationError(f"Network access is disabled for local models: {url}")

        path = Path(url.path).resolve()
        if not path.is_relative_to(self.root):
            logger.error(f"[Offline] Blocked access outside model cache: {path}")
            raise OfflineViolationError(f"Path is outside the model cache: {path}")

        if request.method not in ("GET", "HEAD"):
            return httpx.Response(405, request=request)
        if not path.is_file():
            return httpx.Response(404, request=request)
        if request.method == "HEAD":
            return httpx.Response(200, request=request)
        return httpx.Response(200, content=path.read_bytes(), request=request)


class LocalModelResolver:
    """Locates pre-downloaded models in the cache directory.

    Uses an injected client so tests and callers control its transport; the
    default client can only read the cache directory.
    """

    def __init__(self, cache_dir: str | Path, client: httpx.Client | None = None):
        self.cache_dir = Path(cache_dir).expanduser().resolve()
        self.client = client or httpx.Client(transport=LocalFileTransport(self.cache_dir))

    def model_dir(self, model_name: str) -> Path:
        return self.cache_dir / model_name

    def file_url(self, model_name: str, filename: str) -> str:
        path = (self.model_dir(model_name) / filename).as_posix()
        return f"file://{CACHE_HOST}{quote(path)}"

    def read_bytes(self, model_name: str, filename: str) -> bytes | None:
        response = self.client.get(self.file_url(model_name, filename))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.content

    def read_json(self, model_name: str, filename: str) -> dict[str, Any] | None:
        content = self.read_bytes(model_name, filename)
        if content is None:
            return None
        return json.loads(content)

    def resolve(self, model_name: str, required_files: list[str]) -> Path:
        """Return the model directory after checking required files exist.

        Raises:
            ModelFilesMissingError: If any required file is absent
        """
        missing = [
            name
            for name in required_files
            if self.client.head(self.file_url(model_name, name)).status_code != 200
        ]
        if missing:
            raise ModelFilesMissingError(
                f"Model '{model_name}' is missing {', '.join(missing)} in {self.cache_dir}"
            )
        return self.model_dir(model_name)

    def close(self) -> None:
        self.client.close()
