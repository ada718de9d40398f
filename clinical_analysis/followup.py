"""
Follow-up question service client.

Given a confirmed symptom and the patient's history, a remote service
suggests one follow-up question for the clinician.

Contract:
- Requests run as detached, cancellable background tasks; the core never
  blocks on them
- Failures surface as FollowupServiceError to the caller's error callback
- No automatic retries, and results never touch the segment store
"""

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 15.0

_history_cache: Dict[str, Dict[str, Any]] = {}


class FollowupServiceError(RuntimeError):
    """Recoverable, user-visible failure of the follow-up service."""


@dataclass(frozen=True)
class Followup:
    """One suggested follow-up question."""
    question: str
    why: str = ""
    symptom: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {'question': self.question, 'why': self.why, 'symptom': self.symptom}


def load_patient_history(path) -> Dict[str, Any]:
    """
    Load patient history JSON, cached per path.

    Missing or malformed files yield an empty history.
    """
    key = str(path)
    if key in _history_cache:
        return _history_cache[key]

    history: Dict[str, Any] = {}
    try:
        with open(Path(path), 'r', encoding='utf-8') as f:
            data = json.load(f)
        if isinstance(data, dict):
            history = data
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Patient history unavailable ({path}): {e}")

    _history_cache[key] = history
    return history


class FollowupClient:
    """
    HTTP client for the follow-up question service.

    Usage:
        client = FollowupClient("https://triage-proxy.example")
        followup = client.request_followup("chest pain", history)
    """

    def __init__(
        self,
        base_url: str,
        timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout_sec = timeout_sec
        self._transport = transport

    @classmethod
    def from_config(cls, config: Optional[Dict] = None) -> 'FollowupClient':
        followup_config = (config or {}).get('followup', {})
        return cls(
            base_url=followup_config.get('base_url', 'http://localhost:8787'),
            timeout_sec=followup_config.get('timeout_sec', DEFAULT_TIMEOUT_SEC),
        )

    def request_followup(self, symptom: str, history: Optional[Dict[str, Any]] = None) -> Optional[Followup]:
        """
        Ask the service for one follow-up question.

        Args:
            symptom: Symptom text
            history: Patient history payload

        Returns:
            Followup, or None if the service had no question

        Raises:
            FollowupServiceError: On transport errors, non-2xx responses or
                a non-JSON body
        """
        url = f"{self.base_url}/api/followup"
        body = {'symptom': symptom, 'history': history or {}}

        try:
            with httpx.Client(timeout=self.timeout_sec, transport=self._transport) as client:
                resp = client.post(url, json=body)
        except httpx.HTTPError as e:
            raise FollowupServiceError(f"Follow-up service unreachable: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise FollowupServiceError(
                f"Follow-up service returned {resp.status_code}: {resp.text[:200]}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise FollowupServiceError(f"Follow-up service returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            return None
        question = str(data.get('question') or '').strip()
        why = str(data.get('why') or '').strip()
        if not question:
            return None
        return Followup(question=question, why=why, symptom=symptom)


class FollowupTask:
    """Handle for one in-flight follow-up request."""

    def __init__(self, symptom: str):
        self.symptom = symptom
        self.future: Optional[Future] = None
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Suppress callbacks; also cancels the request if not yet started."""
        self._cancelled.set()
        if self.future is not None:
            self.future.cancel()

    def done(self) -> bool:
        return self.future is not None and self.future.done()


class FollowupScheduler:
    """
    Runs follow-up requests on a background worker.

    Usage:
        scheduler = FollowupScheduler(client)
        task = scheduler.submit("chest pain", history, on_result, on_error)
        task.cancel()
    """

    def __init__(self, client: FollowupClient, max_workers: int = 1):
        self.client = client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='followup')
        self._tasks: List[FollowupTask] = []
        self._lock = threading.Lock()

    def submit(
        self,
        symptom: str,
        history: Optional[Dict[str, Any]],
        on_result: Callable[[Optional[Followup]], None],
        on_error: Callable[[FollowupServiceError], None]
    ) -> FollowupTask:
        """
        Schedule one request. Exactly one of the callbacks runs, unless the
        task is cancelled first.
        """
        task = FollowupTask(symptom)

        def _run():
            if task.cancelled:
                return
            try:
                followup = self.client.request_followup(symptom, history)
            except FollowupServiceError as e:
                error = e
            except Exception as e:
                # Failures inside the client (e.g. unencodable history) still reach on_error
                error = FollowupServiceError(f"Follow-up request failed: {e!r}")
                error.__cause__ = e
            else:
                error = None

            if error is not None:
                logger.warning(f"Follow-up request failed for '{symptom}': {error}")
                if not task.cancelled:
                    on_error(error)
                return
            if not task.cancelled:
                on_result(followup)

        with self._lock:
            self._tasks = [t for t in self._tasks if not t.done()]
            self._tasks.append(task)
        task.future = self._executor.submit(_run)
        return task

    def cancel_all(self) -> None:
        with self._lock:
            tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info(f"Cancelled {len(tasks)} follow-up requests")

    def shutdown(self, wait: bool = False) -> None:
        self.cancel_all()
        self._executor.shutdown(wait=wait)
