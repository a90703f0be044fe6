"""HTTP utilities for fetching discovery sources."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from typing import Mapping

import httpx

from .config import IngestConfig

LOGGER = logging.getLogger(__name__)

CANCEL_POLL_SECONDS = 0.05


class FetchCancelledError(RuntimeError):
    """Raised when an in-flight fetch is aborted through its cancellation signal."""


@dataclass(slots=True)
class FetchResponse:
    status_code: int
    url: str
    text: str
    headers: dict[str, str] = field(default_factory=dict)
    reason_phrase: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class HttpFetcher:
    """Thin ``httpx`` wrapper whose fetches can be aborted from another thread."""

    def __init__(
        self,
        config: IngestConfig | None = None,
        *,
        client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config or IngestConfig()
        self._transport = transport
        self._client = client or self._build_client()
        self._owns_client = client is None

    def _build_client(self) -> httpx.Client:
        kwargs: dict[str, object] = {
            "timeout": self._config.request_timeout,
            "headers": {"User-Agent": self._config.user_agent},
            "follow_redirects": True,
        }
        if self._transport:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def get(
        self,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> FetchResponse:
        """Fetch ``url``; a set ``cancel_event`` aborts the call at any stage.

        With a cancel event the transfer runs on a helper thread so a blocked
        connect or a slow first byte does not hold the caller. The abandoned
        transfer stops at its next chunk or at the client timeout.
        """

        if cancel_event is None:
            return self._transfer(url, params, None)
        if cancel_event.is_set():
            raise FetchCancelledError(f"Fetch of {url} cancelled before start")

        future: Future[FetchResponse] = Future()
        worker = threading.Thread(
            target=self._run_transfer,
            args=(future, url, params, cancel_event),
            name="discovery-fetch",
            daemon=True,
        )
        worker.start()
        while True:
            done, _ = wait([future], timeout=CANCEL_POLL_SECONDS)
            if done:
                return future.result()
            if cancel_event.is_set():
                LOGGER.debug("Abandoning pending fetch of %s", url)
                raise FetchCancelledError(f"Fetch of {url} cancelled while awaiting response")

    def _run_transfer(
        self,
        future: Future[FetchResponse],
        url: str,
        params: Mapping[str, str] | None,
        cancel_event: threading.Event,
    ) -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(self._transfer(url, params, cancel_event))
        except Exception as exc:
            future.set_exception(exc)

    def _transfer(
        self,
        url: str,
        params: Mapping[str, str] | None,
        cancel_event: threading.Event | None,
    ) -> FetchResponse:
        with self._client.stream("GET", url, params=params) as response:
            chunks: list[bytes] = []
            for chunk in response.iter_bytes():
                if cancel_event is not None and cancel_event.is_set():
                    raise FetchCancelledError(f"Fetch of {response.url} cancelled mid-transfer")
                chunks.append(chunk)
            payload = b"".join(chunks)
            try:
                body = payload.decode(response.encoding or "utf-8", errors="replace")
            except LookupError:
                body = payload.decode("utf-8", errors="replace")
            LOGGER.debug("GET %s -> %s (%d bytes)", response.url, response.status_code, len(body))
            return FetchResponse(
                status_code=response.status_code,
                url=str(response.url),
                text=body,
                headers={key.lower(): value for key, value in response.headers.items()},
                reason_phrase=response.reason_phrase,
            )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpFetcher":  # pragma: no cover - convenience wrapper
        return self

    def __exit__(self, *_exc_info) -> None:  # pragma: no cover - convenience wrapper
        self.close()


__all__ = ["FetchCancelledError", "FetchResponse", "HttpFetcher"]
