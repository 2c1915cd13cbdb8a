"""Notify module — link report notices and delivery collaborator."""

from peertest.notify.notifier import (
    LoggingNotifier,
    Notice,
    NoticeKind,
    Notifier,
    build_closure_notices,
    build_report_notices,
)

__all__ = [
    "LoggingNotifier",
    "Notice",
    "NoticeKind",
    "Notifier",
    "build_closure_notices",
    "build_report_notices",
]
