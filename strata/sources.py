"""Thread sources: where raw conversations come from.

Both sources return raw conversation dicts (the export JSON shape) for the
parser, filtered by ``ThreadCriteria``.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import httpx

from strata.importers.export_parser import MAX_EXPORT_SIZE, decode_export, load_conversations
from strata.protocols import InputError, ThreadCriteria

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0


class FileThreadSource:
    """Conversations from a local export file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()

    def __repr__(self) -> str:
        return f"FileThreadSource({str(self.path)!r})"

    def fetch_threads(self, criteria: Optional[ThreadCriteria] = None) -> List[Dict[str, Any]]:
        """Read and decode the export file.

        Raises:
            InputError: If the file is missing, too large, or not a valid export
        """
        if not self.path.exists():
            raise InputError(f"File not found: {self.path}")
        size = self.path.stat().st_size
        if size > MAX_EXPORT_SIZE:
            raise InputError(f"Export file too large ({size} bytes, max {MAX_EXPORT_SIZE})")
        try:
            content = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise InputError(f"Cannot read export file {self.path}: {e}")

        conversations = decode_export(content)
        if criteria is not None:
            conversations = criteria.apply(conversations)
        logger.debug(f"Loaded {len(conversations)} conversations from {self.path}")
        return conversations


class HttpThreadSource:
    """Conversations from an HTTP endpoint serving the export shape.

    ``GET <base_url>/conversations`` must return either a JSON array of
    conversations or an object with a ``conversations`` array. Criteria are
    sent as query parameters and applied again locally, so servers that
    ignore them still yield the right selection.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url or not base_url.startswith(("http://", "https://")):
            raise InputError(f"Invalid source URL: {base_url!r}")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def __repr__(self) -> str:
        return f"HttpThreadSource({self.base_url!r})"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _params(self, criteria: Optional[ThreadCriteria]) -> Dict[str, Any]:
        if criteria is None:
            return {}
        params: Dict[str, Any] = {}
        if criteria.since is not None:
            params["since"] = criteria.since
        if criteria.until is not None:
            params["until"] = criteria.until
        if criteria.title_contains:
            params["title"] = criteria.title_contains
        if criteria.limit is not None:
            params["limit"] = criteria.limit
        return params

    def fetch_threads(self, criteria: Optional[ThreadCriteria] = None) -> List[Dict[str, Any]]:
        """Fetch conversations from the endpoint.

        Raises:
            InputError: If the endpoint is unreachable, returns an error
                status, or returns something that is not an export
        """
        url = f"{self.base_url}/conversations"
        try:
            with httpx.Client(
                headers=self._headers(), timeout=self.timeout, transport=self._transport
            ) as client:
                response = client.get(url, params=self._params(criteria))
        except httpx.TimeoutException as e:
            raise InputError(f"Timed out fetching {url}: {e}")
        except httpx.RequestError as e:
            raise InputError(f"Cannot reach {url}: {e}")

        if response.status_code != 200:
            raise InputError(f"Source returned status {response.status_code} for {url}")

        try:
            data = response.json()
        except ValueError as e:
            raise InputError(f"Source returned invalid JSON: {e}")

        conversations = load_conversations(data)
        if criteria is not None:
            conversations = criteria.apply(conversations)
        logger.info(f"Fetched {len(conversations)} conversations from {self.base_url}")
        return conversations
