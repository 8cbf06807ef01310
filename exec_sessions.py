"""
Exec Session Manager

Runs interactive commands inside containers on behalf of UI clients. Each
client owns at most one session; its cumulative stdout/stderr is pushed to
that client after every chunk, and a final message carries the exit code.

Session lifecycle: STARTING -> STREAMING -> TERMINATING -> EXITED.
A graceful termination sends SIGTERM and arms a kill timer that is always
cleared when the session reaches EXITED.
"""

import asyncio
import codecs
import contextlib
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from models import ExecMessage, ExecOutput
from utils import ACTIVE_EXEC_SESSIONS, DockerManagerException, logger

READ_CHUNK_SIZE = 4096
SPAWN_FAILURE_CODE = 1

ExecPush = Callable[[str, ExecMessage], Awaitable[None]]


class ExecState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    TERMINATING = "terminating"
    EXITED = "exited"


class ExecSession:
    """One command running inside a container for one client"""

    def __init__(self, session_id: str, container_id: str, command: str):
        self.session_id = session_id
        self.container_id = container_id
        self.command = command
        self.process: Optional[asyncio.subprocess.Process] = None
        self.state = ExecState.STARTING
        self.stdout = ""
        self.stderr = ""
        self.suppress_output = False
        self.kill_timer: Optional[asyncio.TimerHandle] = None
        # termination requested before the process existed
        self.pending_force: Optional[bool] = None
        self.task: Optional[asyncio.Task] = None

    def message(self, code: Optional[int] = None) -> ExecMessage:
        return ExecMessage(
            data=ExecOutput(
                container_id=self.container_id,
                stdout=self.stdout,
                stderr=self.stderr,
                code=code,
            )
        )

    def clear_kill_timer(self):
        if self.kill_timer:
            self.kill_timer.cancel()
            self.kill_timer = None


class ExecSessionManager:
    """Owns every running exec session, keyed by client id"""

    def __init__(self, backend, push: ExecPush, kill_timeout: float = 2.0):
        self.backend = backend
        self.push = push
        self.kill_timeout = kill_timeout
        self.sessions: Dict[str, ExecSession] = {}

    def __len__(self):
        return len(self.sessions)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self.sessions

    def get(self, client_id: str) -> Optional[ExecSession]:
        return self.sessions.get(client_id)

    async def start(self, client_id: str, container_id: str, command: str) -> None:
        """Start a command for a client, or re-attach to its running one"""
        if not command or not command.strip():
            logger.warning("Ignoring exec without command", client_id=client_id, container=container_id)
            return

        session = self.sessions.get(client_id)
        if session:
            logger.info("Re-attaching exec session", client_id=client_id, container=session.container_id)
            session.suppress_output = False
            await self._publish(session)
            return

        session = ExecSession(client_id, container_id, command)
        self.sessions[client_id] = session
        self._update_gauge()
        logger.info("Starting exec session", client_id=client_id, container=container_id, command=command)

        try:
            session.process = await self.backend.container_exec(container_id, command)
        except Exception as e:
            message = e.message if isinstance(e, DockerManagerException) else str(e)
            logger.error("Cannot spawn exec process", client_id=client_id, container=container_id, error=message)
            session.stderr = message
            self._exit(session)
            await self._publish(session, code=SPAWN_FAILURE_CODE)
            return

        session.state = ExecState.STREAMING
        if session.pending_force is not None:
            self._signal(session, session.pending_force)
        session.task = asyncio.create_task(self._stream(session))

    def terminate(self, client_id: str, force: bool = False, suppress_output: bool = False) -> bool:
        """Terminate a client's session; False when the client has none"""
        session = self.sessions.get(client_id)
        if not session:
            return False

        session.suppress_output = session.suppress_output or suppress_output
        if session.process is None:
            session.pending_force = force or bool(session.pending_force)
            session.state = ExecState.TERMINATING
            return True

        self._signal(session, force)
        return True

    async def shutdown(self):
        """Kill every session without pushing anything further"""
        tasks = [session.task for session in self.sessions.values() if session.task]
        for client_id in list(self.sessions):
            self.terminate(client_id, force=True, suppress_output=True)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _signal(self, session: ExecSession, force: bool):
        process = session.process
        if force:
            logger.info("Killing exec session", client_id=session.session_id)
            session.clear_kill_timer()
            session.state = ExecState.TERMINATING
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            return

        logger.info("Terminating exec session", client_id=session.session_id)
        session.state = ExecState.TERMINATING
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        if session.kill_timer is None:
            loop = asyncio.get_running_loop()
            session.kill_timer = loop.call_later(self.kill_timeout, self._escalate, session)

    def _escalate(self, session: ExecSession):
        session.kill_timer = None
        if session.state is ExecState.EXITED:
            return
        logger.warning("Exec session ignored SIGTERM, killing", client_id=session.session_id)
        with contextlib.suppress(ProcessLookupError):
            session.process.kill()

    async def _stream(self, session: ExecSession):
        process = session.process
        queue: asyncio.Queue = asyncio.Queue()

        async def read(name, stream):
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while stream is not None:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                await queue.put((name, decoder.decode(chunk)))
            tail = decoder.decode(b"", final=True)
            if tail:
                await queue.put((name, tail))
            await queue.put((name, None))

        readers = [
            asyncio.create_task(read("stdout", process.stdout)),
            asyncio.create_task(read("stderr", process.stderr)),
        ]
        try:
            open_streams = len(readers)
            while open_streams:
                name, text = await queue.get()
                if text is None:
                    open_streams -= 1
                    continue
                setattr(session, name, getattr(session, name) + text)
                await self._publish(session)

            code = await process.wait()
        except asyncio.CancelledError:
            for reader in readers:
                reader.cancel()
            self._exit(session)
            raise

        logger.info("Exec session finished", client_id=session.session_id, code=code)
        self._exit(session)
        await self._publish(session, code=code)

    def _exit(self, session: ExecSession):
        session.clear_kill_timer()
        session.state = ExecState.EXITED
        if self.sessions.get(session.session_id) is session:
            del self.sessions[session.session_id]
        self._update_gauge()

    async def _publish(self, session: ExecSession, code: Optional[int] = None):
        if session.suppress_output:
            return
        await self.push(session.session_id, session.message(code))

    def _update_gauge(self):
        ACTIVE_EXEC_SESSIONS.set(len(self.sessions))
