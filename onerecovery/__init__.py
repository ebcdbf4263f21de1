"""OneRecovery builder: resumable pipeline producing a single-file recovery image."""

__version__ = "0.1.0"
