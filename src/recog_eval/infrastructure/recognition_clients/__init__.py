"""
Recognition client package

Provides a uniform "send bytes, receive a ranked-result string" interface.
"""

from recog_eval.infrastructure.recognition_clients.base import RecognitionClient
from recog_eval.infrastructure.recognition_clients.factory import create_client
from recog_eval.infrastructure.recognition_clients.http import HttpRecognitionClient

__all__ = ["RecognitionClient", "HttpRecognitionClient", "create_client"]
