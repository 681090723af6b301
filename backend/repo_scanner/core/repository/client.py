"""
HTTP client for the repository-retrieval (playground) service
"""

import json
import time
from typing import Any, Dict, Optional

import aiohttp

from repo_scanner.config import settings
from ..error_handling.exceptions import RepositoryServiceException
from ..logging.structured_logger import get_logger

logger = get_logger(__name__)


class RepositoryServiceClient:
    """Clone, tree listing and raw content fetch"""

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: Optional[float] = None):
        self.base_url = (base_url or settings.playground_url).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or settings.playground_timeout_seconds)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        start_time = time.time()

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    body = await response.text()
                    if response.status >= 400:
                        raise RepositoryServiceException(
                            f"Playground service error: {body}",
                            upstream_status=response.status,
                        )
                    content_type = response.headers.get("Content-Type", "")
        except aiohttp.ClientError as e:
            logger.external_service_call(
                "playground", path, (time.time() - start_time) * 1000, success=False,
                metadata={"error": str(e)}
            )
            raise RepositoryServiceException(f"Playground service unreachable: {e}", cause=e) from e

        logger.external_service_call("playground", path, (time.time() - start_time) * 1000)

        if "json" in content_type:
            return json.loads(body) if body else None
        return body

    async def clone_repository(self, repo_url: str, branch: str) -> str:
        """Clone the repository and return the service's repo id"""
        data = await self._request("POST", "/clone", json={"repo_url": repo_url, "branch": branch})
        if not isinstance(data, dict) or not data.get("repo_id"):
            raise RepositoryServiceException("Playground service error: clone response has no repo_id")
        return data["repo_id"]

    async def get_repository_structure(self, repo_id: str) -> Dict[str, Any]:
        """Tree plus summary stats: structure, total_lines, file_types, languages"""
        data = await self._request("GET", "/generate", params={"repo_id": repo_id})
        if not isinstance(data, dict):
            raise RepositoryServiceException("Playground service error: malformed structure response")
        return data

    async def get_file_content(self, repo_id: str, path: str) -> str:
        """Raw text of one file; the service answers in a few different shapes"""
        data = await self._request("GET", "/file", params={"repo_id": repo_id, "path": path})
        return normalize_file_content(data)


def normalize_file_content(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        if isinstance(data.get("content"), str):
            return data["content"]
        if data.get("data") is not None:
            inner = data["data"]
            return inner if isinstance(inner, str) else json.dumps(inner)
    return json.dumps(data)
