"""
Process runner shared by every external tool interaction.

Spawns ffmpeg-like tools with stderr piped, feeds stderr chunks into a
rolling buffer, parses progress and stream-size lines and converts the exit
status into either normal completion or a ``ProcessError`` carrying the tail
of stderr.

Each spawned process gets a reader thread pushing stderr chunks onto a
shared queue; the consuming thread polls the queue every ~100 ms so it can
notice cancellation while an encode is in flight. Several processes forming
a pipe (decoder -> encoder) can be merged into one ``ProcessStream``.
"""

import queue
import re
import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence, Tuple, TypeVar, Union

import psutil

from ...errors import Cancelled, ProcessError
from ....utils.logging import get_logger
from .interrupt import check_cancelled, is_cancelled

logger = get_logger("process")

T = TypeVar("T")

# rolling stderr buffer size
MAX_CHUNKS_LEN = 4096
POLL_INTERVAL = 0.1

_TIME_RE = re.compile(r"^(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")


@dataclass(frozen=True)
class Progress:
    """An ffmpeg ``frame= fps= ... time=`` progress line."""
    frame: int
    fps: float
    time: float  # seconds


@dataclass(frozen=True)
class StreamSizes:
    """An ffmpeg ``video:XkB audio:XkB ... muxing overhead`` summary, in bytes."""
    video: int
    audio: int
    subtitle: int
    other: int


FfmpegOut = Union[Progress, StreamSizes]


def _label_value(label: str, line: str) -> Optional[str]:
    idx = line.find(label)
    if idx < 0:
        return None
    rest = line[idx + len(label):].lstrip()
    value = rest.split(None, 1)[0] if rest else ""
    return value or None


def _label_size(label: str, line: str) -> Optional[int]:
    value = _label_value(label, line)
    if value is None:
        return None
    for suffix in ("KiB", "kB"):
        if value.endswith(suffix):
            value = value[:-len(suffix)]
            break
    else:
        return None
    try:
        return int(value) * 1024
    except ValueError:
        return None


def parse_time(value: str) -> Optional[float]:
    """Parse ``H:MM:SS.fraction`` into seconds."""
    match = _TIME_RE.match(value.strip())
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def parse_ffmpeg_out(line: str) -> Optional[FfmpegOut]:
    """Parse one stderr line, returning None for anything unrecognised."""
    line = line.strip()
    if line.startswith("frame="):
        try:
            frame = int(_label_value("frame=", line) or "")
            fps = float(_label_value("fps=", line) or "")
        except ValueError:
            return None
        time_value = _label_value("time=", line)
        time = parse_time(time_value) if time_value else None
        if time is None:
            return None
        return Progress(frame=frame, fps=fps, time=time)

    if line.startswith("video:") and "muxing overhead" in line:
        video = _label_size("video:", line)
        audio = _label_size("audio:", line)
        subtitle = _label_size("subtitle:", line)
        other = _label_size("other streams:", line)
        if None in (video, audio, subtitle, other):
            return None
        return StreamSizes(video=video, audio=audio, subtitle=subtitle, other=other)

    return None


class Chunks:
    """Rolling buffer of the most recent stderr output.

    A chunk ending in '\\r' (ffmpeg progress) is overwritten by the next push,
    so the buffer holds the latest progress line and the lines before it.
    Oldest lines are dropped once the buffer exceeds ``max_len`` bytes.
    """

    def __init__(self, max_len: int = MAX_CHUNKS_LEN):
        self.max_len = max_len
        self.out = bytearray()
        self._trunc_next_push: Optional[int] = None

    def push(self, chunk: bytes):
        if self._trunc_next_push is not None:
            del self.out[self._trunc_next_push:]
            self._trunc_next_push = None

        self.out.extend(chunk)

        while len(self.out) > self.max_len:
            self._rm_oldest_line()

        if chunk.endswith(b"\r"):
            self._trunc_next_push = self._after_last_line_feed()

    def _after_last_line_feed(self) -> int:
        idx = self.out.rfind(b"\n")
        return idx + 1 if idx >= 0 else 0

    def _rm_oldest_line(self):
        next_eol = self.out.find(b"\n")
        if next_eol < 0:
            # one huge line, keep its tail
            del self.out[:len(self.out) - self.max_len]
            return
        if self.out[next_eol + 1:next_eol + 2] == b"\r":
            next_eol += 1
        del self.out[:next_eol + 1]

    def lines_reversed(self) -> Iterator[str]:
        text = self.out.decode("utf-8", errors="replace")
        for line in reversed(text.split("\n")):
            for part in reversed(line.split("\r")):
                yield part

    def rfind_line(self, predicate: Callable[[str], bool]) -> Optional[str]:
        for line in self.lines_reversed():
            if predicate(line):
                return line
        return None

    def rfind_line_map(self, f: Callable[[str], Optional[T]]) -> Optional[T]:
        for line in self.lines_reversed():
            mapped = f(line)
            if mapped is not None:
                return mapped
        return None

    def last_line(self) -> str:
        return self.rfind_line(lambda line: bool(line.strip())) or ""

    def text(self) -> str:
        return self.out.decode("utf-8", errors="replace")


def cmd_str(cmd: Sequence[object]) -> str:
    """Shell-quoted rendering of a command for logs and errors."""
    return shlex.join(str(c) for c in cmd)


def exit_code(returncode: Optional[int]) -> Optional[int]:
    # negative returncode means terminated by a signal
    if returncode is None or returncode < 0:
        return None
    return returncode


def ensure_success(name: str, cmd: Sequence[object], result: subprocess.CompletedProcess):
    """Raise ``ProcessError`` for an unsuccessful one-shot run."""
    if result.returncode == 0:
        return
    # ctrl+c reaches the child too, its failure is the cancellation
    if is_cancelled():
        raise Cancelled()
    stderr = result.stderr or b""
    if isinstance(stderr, str):
        stderr = stderr.encode("utf-8", errors="replace")
    chunks = Chunks()
    chunks.push(stderr)
    raise ProcessError(name, exit_code(result.returncode), cmd_str(cmd), chunks.text())


def run_logged(cmd: Sequence[object], **kwargs) -> subprocess.CompletedProcess:
    """Run a one-shot command, logging it first"""
    logger.cmd(cmd_str(cmd))
    return subprocess.run([str(c) for c in cmd], **kwargs)


def kill_tree(proc: subprocess.Popen):
    """Kill a child process and anything it spawned."""
    if proc.poll() is not None:
        return
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []
    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    try:
        proc.kill()
    except ProcessLookupError:
        pass


@dataclass
class _Tracked:
    proc: subprocess.Popen
    name: str
    cmd: str
    chunks: Chunks
    pending: str = ""
    eof: bool = False


class ProcessStream:
    """Iterator of ``FfmpegOut`` events from one or more running processes.

    Iteration ends once every process has exited successfully. A failing
    process raises ``ProcessError``; an interrupt raises ``Cancelled``. Any
    process still running when the stream is closed (or garbage collected
    mid-iteration) is killed.
    """

    def __init__(self, procs: Sequence[Tuple[subprocess.Popen, str, str]],
                 poll_interval: float = POLL_INTERVAL):
        self._tracked = [_Tracked(proc, name, cmd, Chunks()) for proc, name, cmd in procs]
        self._queue: "queue.Queue[Tuple[int, Optional[bytes]]]" = queue.Queue()
        self._poll_interval = poll_interval
        self._closed = False
        self._threads: List[threading.Thread] = []
        for idx, tracked in enumerate(self._tracked):
            thread = threading.Thread(target=self._read_stderr, args=(idx, tracked.proc),
                                      name=f"stderr-{tracked.name}", daemon=True)
            thread.start()
            self._threads.append(thread)

    @classmethod
    def spawn(cls, cmd: Sequence[object], name: str,
              stdout=subprocess.DEVNULL, stdin=subprocess.DEVNULL) -> "ProcessStream":
        """Spawn a single process and stream its stderr."""
        return cls([(spawn(cmd, stdout=stdout, stdin=stdin), name, cmd_str(cmd))])

    def _read_stderr(self, idx: int, proc: subprocess.Popen):
        stream = proc.stderr
        try:
            while True:
                chunk = stream.read1(4096)
                if not chunk:
                    break
                self._queue.put((idx, chunk))
        except (OSError, ValueError):
            # pipe closed by kill/close
            pass
        finally:
            self._queue.put((idx, None))

    def chunks(self, idx: int = 0) -> Chunks:
        """Stderr buffer of the idx-th process."""
        return self._tracked[idx].chunks

    def __iter__(self) -> Iterator[FfmpegOut]:
        return self.events()

    def events(self) -> Iterator[FfmpegOut]:
        try:
            while not all(t.eof for t in self._tracked):
                try:
                    idx, chunk = self._queue.get(timeout=self._poll_interval)
                except queue.Empty:
                    check_cancelled()
                    continue

                tracked = self._tracked[idx]
                if chunk is None:
                    tracked.eof = True
                    self._finish(tracked)
                    continue

                tracked.chunks.push(chunk)
                text = tracked.pending + chunk.decode("utf-8", errors="replace")
                parts = re.split(r"[\r\n]", text)
                tracked.pending = parts.pop()
                for line in parts:
                    out = parse_ffmpeg_out(line)
                    if out is not None:
                        yield out
        finally:
            self.close()

    def _finish(self, tracked: _Tracked):
        tracked.pending = ""
        returncode = tracked.proc.wait()
        if returncode != 0:
            # stop the rest of a pipe before surfacing the failure
            self.close()
            if is_cancelled():
                raise Cancelled()
            raise ProcessError(tracked.name, exit_code(returncode), tracked.cmd,
                               tracked.chunks.text())

    def wait(self):
        """Drain the stream discarding progress events."""
        for _ in self:
            pass

    def close(self):
        """Kill any still-running process and release pipes."""
        if self._closed:
            return
        self._closed = True
        for tracked in self._tracked:
            kill_tree(tracked.proc)
        for tracked in self._tracked:
            try:
                tracked.proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warn(f"{tracked.name} did not exit after kill")
            for pipe in (tracked.proc.stdin, tracked.proc.stdout, tracked.proc.stderr):
                if pipe is not None:
                    try:
                        pipe.close()
                    except OSError:
                        pass

    def __enter__(self) -> "ProcessStream":
        return self

    def __exit__(self, *exc):
        self.close()
        return False


def spawn(cmd: Sequence[object], stdout=subprocess.DEVNULL,
          stdin=subprocess.DEVNULL) -> subprocess.Popen:
    """Popen with stderr piped; logs the command line."""
    logger.cmd(cmd_str(cmd))
    return subprocess.Popen([str(c) for c in cmd], stdin=stdin, stdout=stdout,
                            stderr=subprocess.PIPE)


def merge(*streams: Tuple[subprocess.Popen, str, Sequence[object]]) -> ProcessStream:
    """Merge already spawned pipe stages into a single event stream."""
    return ProcessStream([(proc, name, cmd_str(cmd)) for proc, name, cmd in streams])
