from __future__ import annotations

import abc
from typing import AsyncIterator, Optional


class GenerationClient(abc.ABC):
    """Abstract generation backend supporting streaming.

    Implementations should yield raw text fragments (without SSE framing)
    and raise on transport or provider errors.
    """

    provider_name: str = "unknown"

    def __init__(self, model: Optional[str] = None):
        self.model = model

    @abc.abstractmethod
    def stream_chat(
        self,
        prompt: str,
        system: Optional[str] = None,
        request_id: Optional[str] = None,
        json_mode: bool = False,
    ) -> AsyncIterator[str]:
        ...
