"""
Error taxonomy for the media worker.

Engines raise these; the service facade turns them into failed job
results so nothing is thrown across a progress stream.
"""

STDERR_TAIL_CHARS = 500


class MediaWorkerError(Exception):
    """Base class for all media worker errors"""

    kind = "error"


class SpawnError(MediaWorkerError):
    """The external binary could not be started (missing or not executable)"""

    kind = "spawn"

    def __init__(self, binary: str, reason: str):
        self.binary = binary
        self.reason = reason
        super().__init__(f"Failed to start {binary}: {reason}")


class ProcessError(MediaWorkerError):
    """A started process exited with a non-zero code"""

    kind = "process"

    def __init__(self, binary: str, exit_code: int, stderr_tail: str = ""):
        self.binary = binary
        self.exit_code = exit_code
        self.stderr_tail = (stderr_tail or "")[-STDERR_TAIL_CHARS:]
        message = f"{binary} exited with code {exit_code}"
        if self.stderr_tail:
            message = f"{message}: {self.stderr_tail}"
        super().__init__(message)


class ProbeParseError(MediaWorkerError):
    """ffprobe produced output that is not the expected JSON document"""

    kind = "probe_parse"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to parse probe output for {path}: {reason}")


class MatchAmbiguity(MediaWorkerError):
    """An episode number has no or more than one library counterpart"""

    kind = "match_ambiguity"

    def __init__(self, number: int, candidates: int):
        self.number = number
        self.candidates = candidates
        if candidates == 0:
            message = f"No library episode numbered {number}"
        else:
            message = f"{candidates} library episodes numbered {number}"
        super().__init__(message)


class RollbackPartialFailure(MediaWorkerError):
    """One undo step of a rollback failed"""

    kind = "rollback"

    def __init__(self, record, reason: str):
        self.record = record
        self.reason = reason
        super().__init__(f"Rollback of {record.type} {record.database_id} failed: {reason}")
