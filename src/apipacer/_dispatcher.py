"""
Single-consumer dispatch loop.

One background thread drains the RequestQueue, skips canceled requests,
waits on the AdmissionGate, enforces the minimum delay between the start
of two sends and hands each admitted request to an idle thread of a small
pool that performs the GET and classifies the response. Permits are
therefore consumed strictly in queue order, while a slow response never
stalls admission of the next request.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import requests

from apipacer._auth import AuthProvider, AuthenticationError
from apipacer._event_listeners import DispatchEventListener, notify_listeners
from apipacer._http import HttpTransport
from apipacer._models import ApiResponse, PendingRequest
from apipacer._queue import ClientClosedError, RequestQueue
from apipacer._rate_limit import AdmissionGate, ResponseClassifier

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Background worker admitting queued requests one at a time.

    Per iteration:
        1. Take the next request from the queue (blocks while empty).
        2. Drop it if it was canceled (no permit was reserved yet).
        3. Take a permit from the gate (blocks while the window is exhausted),
           then a free send thread.
        4. Wait until `min_delay` has elapsed since the previous send started.
        5. If it was canceled meanwhile, refund the permit and drop it.
        6. Hand it to the send pool and wait until the send has started.

    The send thread checks cancellation once more before calling the
    transport, so a request canceled at any point before its GET starts
    is never sent and gets its permit refunded.

    Example:
        >>> dispatcher = Dispatcher(queue, gate, classifier, transport)
        >>> dispatcher.start()
        >>> ...
        >>> dispatcher.stop()

    Args:
        queue: Source of pending requests.
        gate: Admission gate of the current window.
        classifier: Classifier applied to every response.
        transport: Transport performing the GETs.
        auth_provider: Credential for authenticated requests (optional).
        min_delay: Minimum seconds between two consecutive sends.
        max_in_flight: Number of send threads.
        request_timeout: Timeout in seconds passed to the transport.
        listeners: Dispatch event listeners.
    """

    def __init__(
        self,
        queue: RequestQueue,
        gate: AdmissionGate,
        classifier: ResponseClassifier,
        transport: HttpTransport,
        auth_provider: AuthProvider | None = None,
        min_delay: float = 0.008,
        max_in_flight: int = 16,
        request_timeout: float = 30.0,
        listeners: list[DispatchEventListener] | None = None,
    ):
        assert queue is not None, "queue cannot be None."
        assert gate is not None, "gate cannot be None."
        assert classifier is not None, "classifier cannot be None."
        assert transport is not None, "transport cannot be None."
        assert min_delay is not None, "min_delay cannot be None."
        assert min_delay >= 0, "min_delay must be greater than or equal to 0."
        assert max_in_flight is not None, "max_in_flight cannot be None."
        assert max_in_flight > 0, "max_in_flight must be greater than 0."
        assert request_timeout is not None, "request_timeout cannot be None."
        assert request_timeout > 0, "request_timeout must be greater than 0."

        self.queue = queue
        self.gate = gate
        self.classifier = classifier
        self.transport = transport
        self.auth_provider = auth_provider
        self.min_delay = min_delay
        self.max_in_flight = max_in_flight
        self.request_timeout = request_timeout
        self.listeners: list[DispatchEventListener] = listeners or []

        self._stopped = threading.Event()
        self._last_send: float | None = None
        # One slot per send thread; a request is handed off only while a thread is free
        self._send_slots = threading.BoundedSemaphore(max_in_flight)
        self._executor = ThreadPoolExecutor(
            max_workers=max_in_flight,
            thread_name_prefix="apipacer-send",
        )
        self._thread = threading.Thread(
            target=self._run,
            name="apipacer-dispatcher",
            daemon=True,
        )

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        """Start the dispatch loop."""
        assert not self._stopped.is_set(), "Dispatcher can not be restarted after stop()."
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the dispatch loop and release its threads.

        Requests still buffered or waiting for a permit are abandoned: their
        futures never complete. Sends already in flight are not interrupted,
        but their responses are no longer re-queued.

        Args:
            timeout: Seconds to wait for the dispatch thread to exit.
        """
        if self._stopped.is_set():
            return

        self._stopped.set()
        self.queue.close()
        self.gate.close()
        self._executor.shutdown(wait=False, cancel_futures=True)

        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    # ======================
    # Dispatch loop
    # ======================

    def _run(self) -> None:
        logger.debug(f"{'Dispatcher':<26} | Dispatcher | Dispatch loop started.")

        while not self._stopped.is_set():
            request = self.queue.take()
            if request is None:
                break

            if request.canceled:
                self._drop_canceled(request)
                continue

            window_id = self.gate.acquire_window()
            if window_id is None:
                break
            request.window_id = window_id

            if not self._acquire_send_slot():
                break

            self._wait_min_delay()
            if self._stopped.is_set():
                break

            if request.canceled:
                self._send_slots.release()
                self._refund(request)
                self._drop_canceled(request)
                continue

            started = threading.Event()
            try:
                self._executor.submit(self._send, request, started)
            except RuntimeError:
                # Executor was shut down concurrently by stop()
                self._send_slots.release()
                break

            # `_last_send` is stamped by the send thread right before the GET
            while not started.wait(0.1):
                if self._stopped.is_set():
                    break

        logger.debug(f"{'Dispatcher':<26} | Dispatcher | Dispatch loop stopped.")

    def _acquire_send_slot(self) -> bool:
        while not self._stopped.is_set():
            if self._send_slots.acquire(timeout=0.1):
                return True
        return False

    def _refund(self, request: PendingRequest) -> None:
        if not self.gate.release(1, window_id=request.window_id):
            logger.debug(f"{request.id[:26]:<26} | Dispatcher | Window already reset, permit not refunded.")

    def _wait_min_delay(self) -> None:
        if self._last_send is None or self.min_delay <= 0:
            return

        wait_time = self.min_delay - (time.monotonic() - self._last_send)
        if wait_time > 0:
            self._stopped.wait(wait_time)

    def _drop_canceled(self, request: PendingRequest) -> None:
        logger.debug(f"{request.id[:26]:<26} | Dispatcher | Request canceled before being sent, dropped.")
        notify_listeners(self.listeners, "on_canceled", request=request)

    # ======================
    # Send path (pool threads)
    # ======================

    def _send(self, request: PendingRequest, started: threading.Event) -> None:
        try:
            if request.canceled:
                self._refund(request)
                self._drop_canceled(request)
                return

            try:
                headers = self._auth_headers(request)
                request.attempts += 1
                notify_listeners(self.listeners, "on_dispatch", request=request)
                self._last_send = time.monotonic()
                started.set()
                response = self.transport.get(request.url, headers=headers, timeout=self.request_timeout)
            except Exception as e:
                self._on_transport_error(request, e)
                return

            self._complete(request, response)
        finally:
            started.set()
            self._send_slots.release()

    def _complete(self, request: PendingRequest, response: requests.Response) -> None:
        try:
            outcome = self.classifier.classify(response, request)
            if not outcome.allow:
                logger.debug(
                    f"{request.id[:26]:<26} | Dispatcher | Re-queued after HTTP {outcome.status_code} "
                    f"(attempt={request.attempts})."
                )
                return

            api_response = ApiResponse(
                status_code=response.status_code,
                body=response.text,
                headers=response.headers,
            )
        except ClientClosedError:
            logger.debug(f"{request.id[:26]:<26} | Dispatcher | Client shut down, rejected request abandoned.")
            return
        except Exception as e:
            logger.warning(
                f"{request.id[:26]:<26} | Dispatcher | ❌ Failed to process response of {request.url}: {e}",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            request.fail(e)
            return

        if request.succeed(api_response):
            notify_listeners(self.listeners, "on_response", request=request, response=api_response)

    def _auth_headers(self, request: PendingRequest) -> dict[str, str] | None:
        if not request.authenticated:
            return None
        if self.auth_provider is None:
            raise AuthenticationError("Authenticated request submitted but no API key is configured.")
        return self.auth_provider.get_auth_headers()

    def _on_transport_error(self, request: PendingRequest, error: Exception) -> None:
        logger.warning(
            f"{request.id[:26]:<26} | Dispatcher | ❌ Transport failure for {request.url}: {error}",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )

        if self.gate.restore_probe(window_id=request.window_id):
            logger.debug(f"{request.id[:26]:<26} | Dispatcher | Probe got no response, probe permit restored.")

        request.fail(error)
        notify_listeners(self.listeners, "on_transport_error", request=request, error=error)
