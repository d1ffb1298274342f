"""
Recognition client factory

Creates the client instance for a service under evaluation.
"""

from __future__ import annotations

from recog_eval.harness_config import HarnessConfig, load_config
from recog_eval.infrastructure.recognition_clients.base import RecognitionClient
from recog_eval.infrastructure.recognition_clients.http import HttpRecognitionClient


def create_client(service_id: str, config: HarnessConfig | None = None) -> RecognitionClient:
    """
    Create the client for a service

    Args:
        service_id: Identifier of the recognition service
        config: HarnessConfig (loads from env if not provided)

    Returns:
        RecognitionClient
    """
    if config is None:
        config = load_config()

    return HttpRecognitionClient(
        service_id,
        base_url=config.client.base_url,
        timeout_seconds=config.client.timeout_seconds,
        saturation_marker=config.client.saturation_marker,
    )
