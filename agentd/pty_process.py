"""
Pseudo-terminal process primitive used by the terminal agent
"""

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import struct
import termios
from typing import Awaitable, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class PtyHandle(Protocol):
    """Handle to a running shell attached to a pseudo-terminal"""

    def write(self, text: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def close(self) -> None: ...


PtySpawner = Callable[..., Awaitable[PtyHandle]]


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack('HHHH', rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _make_controlling_terminal() -> None:
    # runs in the child before exec; stdin is the pty slave at this point
    os.setsid()
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess:
    """Shell process whose stdio is the slave side of a pty"""

    def __init__(self, process: asyncio.subprocess.Process, master_fd: int,
                 loop: asyncio.AbstractEventLoop):
        self.process = process
        self.master_fd: Optional[int] = master_fd
        self._loop = loop

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def closed(self) -> bool:
        return self.master_fd is None

    def write(self, text: str) -> None:
        if self.master_fd is None:
            raise OSError("PTY is closed")
        data = text.encode('utf-8')
        while data:
            written = os.write(self.master_fd, data)
            data = data[written:]

    def resize(self, cols: int, rows: int) -> None:
        if self.master_fd is not None:
            _set_winsize(self.master_fd, cols, rows)

    def close(self) -> None:
        if self.master_fd is None:
            return
        fd, self.master_fd = self.master_fd, None

        try:
            self._loop.remove_reader(fd)
        except Exception as e:
            logger.debug(f"Failed to remove PTY reader: {e}")

        try:
            os.close(fd)
        except OSError:
            pass

        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass


async def spawn_pty(shell: str,
                    cwd: Optional[str],
                    cols: int,
                    rows: int,
                    on_data: Callable[[str], None]) -> PtyProcess:
    """Start `shell` inside a new pty and stream its output to `on_data`"""
    loop = asyncio.get_running_loop()
    master_fd, slave_fd = pty.openpty()

    try:
        _set_winsize(slave_fd, cols, rows)
    except OSError as e:
        logger.warning(f"Failed to set terminal size: {e}")

    env = dict(os.environ)
    env.setdefault('TERM', 'xterm-256color')
    env['COLUMNS'] = str(cols)
    env['LINES'] = str(rows)

    try:
        process = await asyncio.create_subprocess_exec(
            shell,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            env=env,
            preexec_fn=_make_controlling_terminal,
        )
    except Exception:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)

    os.set_blocking(master_fd, False)
    handle = PtyProcess(process, master_fd, loop)
    # incremental decoder keeps multi-byte characters split across reads intact
    decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')

    def _on_readable():
        fd = handle.master_fd
        if fd is None:
            return
        try:
            chunk = os.read(fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the shell exits and the slave side is gone
            chunk = b''

        if not chunk:
            loop.remove_reader(fd)
            return

        text = decoder.decode(chunk)
        if text:
            on_data(text)

    loop.add_reader(master_fd, _on_readable)
    logger.debug(f"Spawned {shell} in pty (pid={process.pid}, cwd={cwd})")
    return handle
