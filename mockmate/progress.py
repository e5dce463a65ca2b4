from typing import Any, Dict, Optional

from mockmate.channel import Channel
from mockmate.events import PROGRESS_STAGES, CompleteEvent, ProgressErrorEvent, ProgressEvent


class ProgressEmitter:
    """Coarse progress for one-shot jobs.

    Progress is clamped to 0..100 and never moves backwards; a lower value is
    reported as the current one. ``complete`` and ``fail`` are terminal and
    close the channel.
    """

    def __init__(self, channel: Channel):
        self.channel = channel
        self.progress = 0
        self.stage: Optional[str] = None
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    async def emit(self, progress: int, label: str, stage: str) -> bool:
        if stage not in PROGRESS_STAGES:
            raise ValueError(f"unknown progress stage: {stage}")
        if self._done:
            return False
        self.progress = max(self.progress, min(100, max(0, int(progress))))
        self.stage = stage
        return await self.channel.put(ProgressEvent(progress=self.progress, label=label, stage=stage))

    async def complete(self, data: Dict[str, Any], label: str = "Done") -> bool:
        if self._done:
            return False
        self._done = True
        self.progress = 100
        self.stage = "done"
        ok = await self.channel.put(CompleteEvent(label=label, data=data))
        self.channel.close()
        return ok

    async def fail(self, error: str, label: str = "Generation failed") -> bool:
        if self._done:
            return False
        self._done = True
        ok = await self.channel.put(ProgressErrorEvent(progress=self.progress, label=label, error=error, stage=self.stage))
        self.channel.close()
        return ok
