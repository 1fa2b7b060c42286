"""
Shell Command Queue Daemon

A long-running daemon that queues shell commands and runs them under
per-group concurrency limits:
- Named groups with their own slot count and queue
- Process supervision with pause, resume and kill
- Authenticated, TLS-encrypted local control socket
"""

__version__ = "0.1.0"
