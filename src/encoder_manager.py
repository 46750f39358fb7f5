"""
Encoder Process Manager for live-relay.

Owns the FFmpeg process of each live stream session:
- Fixed RTMP -> HLS transcoding profile
- Line-based classification of FFmpeg output for diagnostics
- Exit notification when FFmpeg ends on its own
- Bounded check that the HLS manifest actually appears
- Stop with SIGTERM, escalating to SIGKILL after a timeout
"""

import asyncio
import os
import re
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Set

from config import settings
from stream_layout import StreamLayout

logger = logging.getLogger(__name__)

ExitCallback = Callable[[Optional[int]], Awaitable[None]]

# FFmpeg rewrites its progress line with \r, so both count as line breaks
LINE_BREAK = re.compile(rb"[\r\n]")
ERROR_LINE = re.compile(r"error|fail|missing", re.IGNORECASE)
PROGRESS_LINE = re.compile(r"frame|fps|bitrate")

CHUNK_SIZE = 4096
MAX_BUFFER = 1024 * 1024  # 1 MB


class EncoderSpawnError(RuntimeError):
    """FFmpeg could not be started (binary missing or not executable)."""


def classify_encoder_line(line: str) -> int:
    """Logging level for a line of FFmpeg stderr output."""
    if ERROR_LINE.search(line):
        return logging.ERROR
    if PROGRESS_LINE.search(line):
        return logging.INFO
    return logging.DEBUG


class EncoderHandle:
    """
    A single running FFmpeg process.

    Created by EncoderProcessManager.start(). The exit callback fires only
    when the process ends without stop() having been called.
    """

    def __init__(
        self,
        stream_key: str,
        command: List[str],
        manifest_path: str,
        on_exit: Optional[ExitCallback] = None,
        stop_timeout: float = 5.0,
        check_interval: float = 1.0,
        check_max_attempts: int = 60,
    ):
        self.stream_key = stream_key
        self.command = command
        self.manifest_path = manifest_path
        self.on_exit = on_exit
        self.stop_timeout = stop_timeout
        self.check_interval = check_interval
        self.check_max_attempts = check_max_attempts

        self.process: Optional[asyncio.subprocess.Process] = None
        self.status = "starting"  # starting, running, stopping, stopped, exited, failed
        self.started_at: Optional[datetime] = None
        self.return_code: Optional[int] = None
        self.last_error: Optional[str] = None
        self.output_confirmed = False

        self._stopping = False
        self._reader_tasks: List[asyncio.Task] = []
        self._monitor_task: Optional[asyncio.Task] = None
        self._output_task: Optional[asyncio.Task] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self) -> None:
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            self.status = "failed"
            self.last_error = str(e)
            raise EncoderSpawnError(
                f"Failed to spawn FFmpeg for {self.stream_key}: {e}") from e

        self.started_at = datetime.now(timezone.utc)
        self.status = "running"

        self._reader_tasks = [
            asyncio.create_task(self._read_lines(self.process.stdout, "stdout")),
            asyncio.create_task(self._read_lines(self.process.stderr, "stderr")),
        ]
        self._monitor_task = asyncio.create_task(self._monitor_process())
        self._output_task = asyncio.create_task(self._confirm_output())

        logger.info(
            f"FFmpeg for {self.stream_key} started with PID {self.process.pid}")

    async def stop(self) -> Optional[int]:
        """
        Terminate FFmpeg and wait for it to exit.

        Sends SIGTERM, waits up to stop_timeout, then SIGKILL. Returns the exit code.
        """
        self._stopping = True
        self.status = "stopping"

        if self.process and self.process.returncode is None:
            try:
                self.process.terminate()
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=self.stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning(
                        f"FFmpeg for {self.stream_key} did not terminate gracefully, killing")
                    self.process.kill()
                    await self.process.wait()
            except ProcessLookupError:
                pass  # Process already dead

        # Let readers drain what FFmpeg wrote before exiting
        pending = [t for t in self._reader_tasks if not t.done()]
        if pending:
            await asyncio.wait(pending, timeout=1.0)
        await self._cancel_tasks()

        self.return_code = self.process.returncode if self.process else None
        self.status = "stopped"
        logger.info(
            f"FFmpeg for {self.stream_key} stopped (exit code {self.return_code})")
        return self.return_code

    async def wait(self) -> Optional[int]:
        if not self.process:
            return None
        return await self.process.wait()

    async def _cancel_tasks(self):
        current = asyncio.current_task()
        for task in [*self._reader_tasks, self._monitor_task, self._output_task]:
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _read_lines(self, stream: Optional[asyncio.StreamReader], source: str):
        """Read a pipe in chunks and log each complete line."""
        if stream is None:
            return

        # Chunked reads avoid LimitOverrunError on very long lines
        buf = b""
        try:
            while True:
                chunk = await stream.read(CHUNK_SIZE)
                if not chunk:
                    break

                buf += chunk
                *lines, buf = LINE_BREAK.split(buf)
                for line in lines:
                    self._log_line(line, source)

                if len(buf) > MAX_BUFFER:
                    logger.warning(
                        f"FFmpeg {source} buffer exceeded {MAX_BUFFER} bytes for {self.stream_key}, truncating")
                    buf = b""

            if buf:
                self._log_line(buf, source)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(
                f"Error reading FFmpeg {source} for {self.stream_key}: {e}")

    def _log_line(self, raw: bytes, source: str):
        line = raw.decode("utf-8", errors="ignore").strip()
        if not line:
            return

        if source == "stdout":
            logger.info(f"FFMPEG OUT [{self.stream_key}]: {line}")
            return

        level = classify_encoder_line(line)
        if level == logging.ERROR:
            self.last_error = line
            logger.error(f"FFMPEG ERR [{self.stream_key}]: {line}")
        else:
            logger.log(level, f"FFMPEG [{self.stream_key}]: {line}")

    async def _monitor_process(self):
        """Wait for FFmpeg to exit and report it unless we asked it to stop."""
        if not self.process:
            return

        try:
            return_code = await self.process.wait()
            self.return_code = return_code

            # Don't notify if we initiated the stop
            if self._stopping:
                return

            if return_code == 0:
                self.status = "exited"
                logger.info(f"FFmpeg for {self.stream_key} exited with code 0")
            else:
                self.status = "failed"
                logger.error(
                    f"FFmpeg for {self.stream_key} exited with code {return_code}")

            if self.on_exit:
                await self.on_exit(return_code)

        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error monitoring FFmpeg for {self.stream_key}: {e}")

    async def _confirm_output(self):
        """Log once the manifest shows up. Never affects the process."""
        output_dir = os.path.dirname(self.manifest_path)
        try:
            for _ in range(self.check_max_attempts):
                if os.path.exists(self.manifest_path):
                    self.output_confirmed = True
                    files = sorted(os.listdir(output_dir))
                    logger.info(
                        f"✅ HLS files created for {self.stream_key}: {', '.join(files)}")
                    return
                if not self.is_running:
                    return
                await asyncio.sleep(self.check_interval)

            logger.warning(
                f"No HLS output for {self.stream_key} after {self.check_max_attempts} checks")
        except asyncio.CancelledError:
            pass
        except OSError as e:
            logger.warning(f"Could not inspect {output_dir}: {e}")

    def get_status(self) -> Dict:
        return {
            "stream_key": self.stream_key,
            "status": self.status,
            "pid": self.pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "return_code": self.return_code,
            "output_confirmed": self.output_confirmed,
            "last_error": self.last_error,
        }


class EncoderProcessManager:
    """
    Starts and stops FFmpeg processes writing HLS into stream directories.

    Keeps track of every handle it started so they can all be stopped on shutdown.
    """

    def __init__(
        self,
        layout: StreamLayout,
        ffmpeg_path: Optional[str] = None,
        stop_timeout: Optional[float] = None,
        check_interval: Optional[float] = None,
        check_max_attempts: Optional[int] = None,
    ):
        self.layout = layout
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.stop_timeout = settings.ENCODER_STOP_TIMEOUT if stop_timeout is None else stop_timeout
        self.check_interval = settings.OUTPUT_CHECK_INTERVAL if check_interval is None else check_interval
        self.check_max_attempts = (
            settings.OUTPUT_CHECK_MAX_ATTEMPTS if check_max_attempts is None else check_max_attempts)
        self._handles: Set[EncoderHandle] = set()

    @property
    def active_handles(self) -> List[EncoderHandle]:
        return list(self._handles)

    def source_address(self, stream_key: str) -> str:
        """Local ingest URL FFmpeg pulls the published stream from."""
        return f"rtmp://{settings.RTMP_HOST}:{settings.RTMP_PORT}/{settings.INGEST_APP}/{stream_key}"

    def build_command(self, stream_key: str, source_address: str) -> List[str]:
        """Build the FFmpeg command for HLS output of one stream."""
        cmd = [self.ffmpeg_path, "-i", source_address]

        # Video: low latency H.264 at a constant quality target
        cmd.extend([
            "-c:v", settings.VIDEO_CODEC,
            "-preset", settings.VIDEO_PRESET,
            "-tune", settings.VIDEO_TUNE,
            "-crf", str(settings.VIDEO_CRF),
        ])

        # Audio
        cmd.extend(["-c:a", settings.AUDIO_CODEC, "-b:a", settings.AUDIO_BITRATE])

        # Reconnect if the ingest source drops
        cmd.extend([
            "-reconnect", "1",
            "-reconnect_streamed", "1",
            "-reconnect_delay_max", str(settings.RECONNECT_DELAY_MAX)
        ])

        # HLS output configuration, every segment stays in the playlist
        cmd.extend(["-f", "hls"])
        cmd.extend(["-hls_time", str(settings.HLS_SEGMENT_DURATION)])
        cmd.extend(["-hls_list_size", str(settings.HLS_LIST_SIZE)])
        cmd.extend(["-hls_flags", "program_date_time"])

        # Segment filename template (3-digit zero-padded)
        cmd.extend(["-hls_segment_filename", self.layout.segment_pattern(stream_key)])

        # Output playlist
        cmd.append(self.layout.manifest_path(stream_key))

        return cmd

    async def start(
        self,
        stream_key: str,
        source_address: Optional[str] = None,
        on_exit: Optional[ExitCallback] = None,
    ) -> EncoderHandle:
        """
        Spawn FFmpeg for a stream and return without waiting for output.

        Raises EncoderSpawnError if the binary cannot be executed.
        """
        source_address = source_address or self.source_address(stream_key)
        cmd = self.build_command(stream_key, source_address)
        logger.info(f"Starting FFmpeg for {stream_key}: {' '.join(cmd)}")

        handle = EncoderHandle(
            stream_key=stream_key,
            command=cmd,
            manifest_path=self.layout.manifest_path(stream_key),
            stop_timeout=self.stop_timeout,
            check_interval=self.check_interval,
            check_max_attempts=self.check_max_attempts,
        )

        async def handle_exit(return_code: Optional[int]):
            self._handles.discard(handle)
            if on_exit:
                await on_exit(return_code)

        handle.on_exit = handle_exit
        await handle.start()
        self._handles.add(handle)
        return handle

    async def stop(self, handle: EncoderHandle) -> Optional[int]:
        self._handles.discard(handle)
        return await handle.stop()

    async def shutdown(self):
        """Stop every FFmpeg process still running."""
        handles = list(self._handles)
        if handles:
            logger.info(f"Stopping {len(handles)} FFmpeg process(es)...")
        for handle in handles:
            try:
                await self.stop(handle)
            except Exception as e:
                logger.error(f"Error stopping FFmpeg for {handle.stream_key}: {e}")
