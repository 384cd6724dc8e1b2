"""Retry-hardened pane capture with session-exit disambiguation."""

import logging
import time
from typing import Callable, Optional

from . import output_signals
from .errors import CaptureFailedError, InvalidInputError, TmuxError
from .models import CaptureResult
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

SESSION_EXITED_SUMMARY = "Agent session exited before capture."


class PaneCaptureService:
    """Captures pane tails, retrying transient failures before giving up."""

    def __init__(
        self,
        tmux: TmuxController,
        config: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.tmux = tmux
        self.config = config or {}
        self._sleep = sleep

        capture_config = self.config.get("timeouts", {}).get("capture", {})
        self.attempts = max(1, int(capture_config.get("attempts", 5)))
        self.retry_delay_seconds = capture_config.get("retry_delay_seconds", 0.12)
        self.default_lines = capture_config.get("default_lines", 50)

    def capture_with_retry(self, session_name: str, lines: int) -> tuple[str, bool]:
        """
        Call capture_pane_tail up to ``attempts`` times.

        Sleeps ``retry_delay_seconds`` between attempts, never after the last.

        Returns:
            (content, True) on the first success, ("", False) when exhausted
        """
        for attempt in range(1, self.attempts + 1):
            content = self.tmux.capture_pane_tail(session_name, lines)
            if content is not None:
                if attempt > 1:
                    logger.debug(f"Captured {session_name} on attempt {attempt}")
                return content, True
            if attempt < self.attempts:
                self._sleep(self.retry_delay_seconds)
        logger.warning(f"Capture of {session_name} failed after {self.attempts} attempts")
        return "", False

    def capture(self, session_name: str, lines: Optional[int] = None) -> CaptureResult:
        """
        Capture a session's pane and annotate it with prompt signals.

        Raises:
            InvalidInputError: lines <= 0
            CaptureFailedError: retries exhausted while the session still exists
                (or its state could not be determined)
        """
        if lines is None:
            lines = self.default_lines
        if lines <= 0:
            raise InvalidInputError("--lines must be > 0", details={"lines": lines})

        content, ok = self.capture_with_retry(session_name, lines)
        if not ok:
            try:
                state = self.tmux.session_state(session_name)
            except TmuxError as e:
                logger.warning(f"Session state query failed after capture failure for {session_name}: {e}")
                state = None
            if state is not None and not state.exists:
                logger.info(f"Session {session_name} exited before capture")
                return CaptureResult(
                    session_name=session_name,
                    content="",
                    lines=lines,
                    status="session_exited",
                    summary=SESSION_EXITED_SUMMARY,
                    session_exited=True,
                )
            raise CaptureFailedError(
                f"could not capture pane output for session {session_name}",
                details={"session_name": session_name},
            )

        needs_input, hint = output_signals.detect_needs_input(content)
        latest = output_signals.latest_line(content)
        return CaptureResult(
            session_name=session_name,
            content=content,
            lines=lines,
            status="captured",
            latest_line=latest,
            summary=output_signals.summarize("captured", latest, needs_input, hint),
            needs_input=needs_input,
            input_hint=hint,
        )
