"""
Recognition client base class

Defines the abstract base class inherited by all recognition clients.
"""

from abc import ABC, abstractmethod

from recog_eval.domain.value_objects import clean_result, error_result


class RecognitionClient(ABC):
    """Abstract base class for recognition service clients"""

    saturation_marker: str | None = None

    @abstractmethod
    def call(self, payload: bytes, key: str) -> str:
        """
        Send a payload and retrieve the ranked-result string

        Implementations never raise for transport failures; they return a
        result tagged with the system-error marker instead.
        """
        pass

    def _normalize(self, reply: str) -> str:
        """Flatten a reply to one line and remap a saturation signal to an error result"""
        reply = clean_result(reply)
        if self.saturation_marker and self.saturation_marker in reply:
            return error_result(reply)
        return reply
