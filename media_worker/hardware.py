"""
Hardware information service.

Constructed once at process start and passed to whatever needs it; every
lookup is memoized on the instance.
"""

import logging
import os
from typing import Optional

from .errors import ProcessError, SpawnError
from .pipeline.runner import ProcessRunner

logger = logging.getLogger("media_worker")

NVIDIA_SMI_ARGS = ["--query-gpu=name", "--format=csv,noheader"]


class HardwareInfo:
    """Memoized CPU and GPU facts"""

    def __init__(self, runner: ProcessRunner, cpu_count: Optional[int] = None):
        self.runner = runner
        self._cpu_count = cpu_count
        self._gpu_name: Optional[str] = None
        self._gpu_checked = False

    def cpu_count(self) -> int:
        if self._cpu_count is None:
            self._cpu_count = os.cpu_count() or 1
        return self._cpu_count

    async def detect_gpu(self) -> Optional[str]:
        """Name of the first NVIDIA GPU, or None when nvidia-smi is unavailable"""
        if self._gpu_checked:
            return self._gpu_name
        try:
            output = await self.runner.run("nvidia-smi", NVIDIA_SMI_ARGS)
            names = [line.strip() for line in output.stdout.splitlines() if line.strip()]
            self._gpu_name = names[0] if names else None
        except (SpawnError, ProcessError) as e:
            logger.info(f"No NVIDIA GPU detected: {e}")
            self._gpu_name = None
        self._gpu_checked = True
        if self._gpu_name:
            logger.info(f"Detected GPU: {self._gpu_name}")
        return self._gpu_name

    async def has_gpu(self) -> bool:
        return await self.detect_gpu() is not None
