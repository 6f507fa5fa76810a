"""Async HTTP client for the build server.

This is the only module that performs network I/O against the build server.
It owns request construction (CSRF crumbs, folder path encoding, absolute URL
normalization) and hands every response body to :mod:`flowgate.jenkins.extract`
for interpretation.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import httpx

from ..config import JenkinsConfig
from ..constants import DEFAULT_HTTP_TIMEOUT, DEFAULT_JOB_TIMEOUT, DEFAULT_POLL_INTERVAL
from ..contracts import ApprovalInfo, BuildState, QueuedBuild
from ..errors import QueueCancelledError, TriggerError, UpstreamParseError
from ..utils.polling import BoundedPoller
from ..utils.urls import absolute_url, encode_job_path, ensure_trailing_slash
from .extract import (
    BuildDocuments,
    QueueItem,
    describe_reports_pause,
    extract_build_state,
    find_approval,
    parse_crumb,
    parse_queue_item,
)

logger = logging.getLogger(__name__)

# Minimal projection of the classic build JSON: enough to tell running from
# finished and to spot input actions.
CORE_BUILD_TREE = (
    "building,result,"
    "actions[_class,inputs[id,message,ok],"
    "executions[id,settled,outcome,proceedUrl,abortUrl,input[id,message,ok]]]"
)


def is_server_error(exc: BaseException) -> bool:
    """True for HTTP status errors in the 5xx range."""
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code >= 500


class JenkinsClient:
    """Talks to the build server's REST surface.

    Args:
        base_url: Root URL of the build server.
        user: Optional user name for basic auth.
        api_token: Optional API token for basic auth.
        http_client: Pre-built ``httpx.AsyncClient`` (tests inject one with a
            mock transport). When omitted the client creates and owns one.
        poller: Poller used for queue resolution and build waiting.
    """

    def __init__(
        self,
        base_url: str,
        *,
        user: Optional[str] = None,
        api_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = DEFAULT_HTTP_TIMEOUT,
        verify_tls: bool = True,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        job_timeout: float = DEFAULT_JOB_TIMEOUT,
        poller: Optional[BoundedPoller] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(user, api_token) if user and api_token else None
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout_seconds, verify=verify_tls
        )
        self._headers = {"Accept": "application/json"}
        self._poller = poller or BoundedPoller(
            poll_interval,
            job_timeout,
            transient=(httpx.TransportError,),
            retry_if=is_server_error,
        )

    @classmethod
    def from_config(cls, config: JenkinsConfig, **kwargs: Any) -> "JenkinsClient":
        return cls(
            config.base_url,
            user=config.user,
            api_token=config.api_token,
            timeout_seconds=config.timeout_seconds,
            verify_tls=config.verify_tls,
            poll_interval=config.poll_interval,
            job_timeout=config.job_timeout,
            **kwargs,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "JenkinsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Request helpers

    def job_url(self, job_path: str) -> str:
        return f"{self.base_url}/{encode_job_path(job_path)}/"

    def _absolute(self, url: str) -> str:
        return ensure_trailing_slash(absolute_url(url, self.base_url))

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Any:
        resp = await self._client.get(
            url,
            params=params,
            headers=self._headers,
            auth=self._auth,
            follow_redirects=True,
        )
        resp.raise_for_status()
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamParseError(f"Non-JSON response from {url}") from exc

    async def _optional_json(self, url: str) -> Any:
        """Fetch a secondary source; any failure means "nothing from here"."""
        try:
            return await self._get_json(url)
        except (httpx.HTTPError, UpstreamParseError) as exc:
            logger.debug(f"Secondary source {url} unavailable: {exc}")
            return None

    async def _crumb_headers(self) -> Dict[str, str]:
        """CSRF crumb header, or nothing when the server does not issue one."""
        try:
            doc = await self._get_json(f"{self.base_url}/crumbIssuer/api/json")
        except (httpx.HTTPError, UpstreamParseError) as exc:
            logger.debug(f"No CSRF crumb from {self.base_url}: {exc}")
            return {}
        crumb = parse_crumb(doc)
        return {crumb[0]: crumb[1]} if crumb else {}

    # ------------------------------------------------------------------
    # Operations

    async def trigger_job(
        self, job_path: str, parameters: Optional[Mapping[str, str]] = None
    ) -> str:
        """Queue a job run and return the absolute queue item URL."""
        endpoint = "buildWithParameters" if parameters else "build"
        url = f"{self.job_url(job_path)}{endpoint}"
        headers = {**self._headers, **(await self._crumb_headers())}
        try:
            resp = await self._client.post(
                url,
                data={k: str(v) for k, v in (parameters or {}).items()},
                headers=headers,
                auth=self._auth,
                follow_redirects=False,
            )
        except httpx.HTTPError as exc:
            raise TriggerError(job_path, str(exc)) from exc

        if resp.status_code >= 400:
            raise TriggerError(job_path, f"HTTP {resp.status_code}", resp.status_code)
        location = resp.headers.get("location")
        if not location:
            raise TriggerError(
                job_path, "response carried no queue location", resp.status_code
            )
        queue_url = self._absolute(location)
        logger.info(f"Triggered {job_path}, queued at {queue_url}")
        return queue_url

    async def get_queue_item(self, queue_url: str) -> QueueItem:
        doc = await self._get_json(f"{self._absolute(queue_url)}api/json")
        return parse_queue_item(doc, self.base_url)

    async def resolve_queue_item(
        self,
        queue_url: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> QueuedBuild:
        """Wait until the queue item has been assigned a build.

        Raises:
            QueueCancelledError: the server cancelled the queued request.
            PollTimeoutError: no build was assigned before the deadline.
        """

        async def probe() -> QueueItem:
            item = await self.get_queue_item(queue_url)
            if item.cancelled:
                raise QueueCancelledError(queue_url, item.why)
            return item

        item = await self._poller.poll(
            probe,
            lambda i: i.executable is not None,
            description=f"queue item {queue_url}",
            timeout=timeout,
            cancel=cancel,
        )
        logger.info(f"Queue item {queue_url} started build {item.executable.build_url}")
        return item.executable

    async def get_build_state(self, build_url: str) -> BuildState:
        """Describe a build, preferring the pipeline description endpoint.

        The pipeline description is the only source that tells a paused
        pipeline from a running one. When it is unavailable the classic build
        JSON is used, backed by the secondary approval sources. Approval URLs
        in the result are always absolute.
        """
        build_url = self._absolute(build_url)
        docs = BuildDocuments(build_url=build_url, base_url=self.base_url)

        try:
            describe = await self._get_json(f"{build_url}wfapi/describe")
        except (httpx.HTTPError, UpstreamParseError) as exc:
            logger.debug(f"Pipeline description unavailable for {build_url}: {exc}")
            describe = None

        if isinstance(describe, dict):
            docs.describe = describe
            if describe_reports_pause(describe):
                docs.pending_actions = await self._optional_json(
                    f"{build_url}wfapi/pendingInputActions"
                )
            return extract_build_state(docs)

        docs.build = await self._get_json(
            f"{build_url}api/json", params={"tree": CORE_BUILD_TREE}
        )
        if isinstance(docs.build, dict) and docs.build.get("building"):
            if find_approval(docs) is None:
                docs.pending_actions = await self._optional_json(
                    f"{build_url}wfapi/pendingInputActions"
                )
                if not docs.pending_actions:
                    docs.input_api = await self._optional_json(
                        f"{build_url}input/api/json"
                    )
        return extract_build_state(docs)

    async def wait_for_build(
        self,
        build_url: str,
        *,
        stop_on_approval: bool,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> BuildState:
        """Poll until the build is terminal, or paused when ``stop_on_approval``."""

        def settled(state: BuildState) -> bool:
            return state.is_terminal or (stop_on_approval and state.awaiting_approval)

        return await self._poller.poll(
            lambda: self.get_build_state(build_url),
            settled,
            description=f"build {build_url}",
            timeout=timeout,
            cancel=cancel,
        )

    async def respond_to_approval(
        self, approval: ApprovalInfo, *, proceed: bool = True
    ) -> None:
        """Proceed or abort a paused build."""
        url = approval.proceed_url if proceed else approval.abort_url
        if not url and approval.id:
            action = "proceedEmpty" if proceed else "abort"
            url = f"{approval.input_page_url}{quote(approval.id, safe='')}/{action}"
        if not url:
            raise UpstreamParseError("Approval carries no proceed or abort endpoint")

        headers = {**self._headers, **(await self._crumb_headers())}
        resp = await self._client.post(
            url, headers=headers, auth=self._auth, follow_redirects=False
        )
        if resp.status_code >= 400:
            resp.raise_for_status()
        logger.info(f"{'Proceeded' if proceed else 'Aborted'} input via {url}")
