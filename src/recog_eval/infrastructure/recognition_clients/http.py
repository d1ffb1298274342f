"""
HTTP recognition gateway client
"""

import logging

import requests

from recog_eval.domain.constants import SATURATION_MARKER
from recog_eval.domain.value_objects import error_result
from recog_eval.infrastructure.recognition_clients.base import RecognitionClient

logger = logging.getLogger(__name__)


class HttpRecognitionClient(RecognitionClient):
    """Client posting raw payloads to a recognition gateway over HTTP"""

    def __init__(
        self,
        service_id: str,
        base_url: str,
        timeout_seconds: float = 30.0,
        saturation_marker: str = SATURATION_MARKER,
        session: requests.Session | None = None,
    ):
        """
        Args:
            service_id: Identifier of the recognition service under evaluation
            base_url: Gateway base URL (e.g. http://gateway:8080)
            timeout_seconds: Per-request timeout (default: 30)
            saturation_marker: Reply phrase signalling an overloaded service
            session: requests session to reuse (a new one if not specified)
        """
        self.service_id = service_id
        self.url = f"{base_url.rstrip('/')}/recognize/{service_id}"
        self.timeout_seconds = timeout_seconds
        self.saturation_marker = saturation_marker
        self.session = session or requests.Session()

    def call(self, payload: bytes, key: str) -> str:
        """
        Send a payload and retrieve the ranked-result string

        Args:
            payload: Raw input bytes (decoded image)
            key: Correlation key of the dataset record

        Returns:
            str: Ranked result (e.g. "cat:0.9;dog:0.1") or a system-error result
        """
        try:
            response = self.session.post(
                self.url,
                data=payload,
                headers={
                    "Content-Type": "application/octet-stream",
                    "X-Correlation-Key": key,
                },
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.debug("Call for %s failed: %s", key, e)
            return error_result(f"{type(e).__name__}: {e}"[:200])

        return self._normalize(response.text)
