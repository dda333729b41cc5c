"""
Spawn external programs and chain them into shell-style pipelines.

Usage:
    from procline import Command, Pipeline, cmd

    # Single process
    code = Command("sh", "-c", "exit 3").execute_and_wait()   # 3

    # Pipeline with | operator (stdout of each stage feeds the next)
    pipeline = cmd("printf 'a\\nb\\nc'") | cmd("grep -v b") | cmd("wc -l")
    status = pipeline.execute_and_wait()

    # Log stdout/stderr to files: run_wc_20240102030405.stdout.log
    Command("wc", "-l").log_stdout_to_file("run").log_stderr_to_file("run")

    # Drive the lifecycle yourself
    pipeline.execute()
    if pipeline.is_running() is PipelineStatus.BROKEN_MID_CHAIN:
        pipeline.terminate()
    pipeline.wait()

    # Async support
    status = await pipeline.execute_and_wait_async()
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import shlex
import signal
import subprocess
import threading
from collections import Counter
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Iterable, Iterator, Mapping, Optional, Union

__version__ = "0.1.0"

__all__ = [
    "Command",
    "Pipeline",
    "ProcessHandle",
    "PipeConnector",
    "EnvironmentPlan",
    "CommandState",
    "PipelineState",
    "RunningStatus",
    "PipelineStatus",
    "Inherit",
    "ToLogFile",
    "ToPipe",
    "FromPipe",
    "ProcessError",
    "InvalidConfiguration",
    "AlreadyRunning",
    "SpawnError",
    "PipelineSpawnError",
    "TerminateError",
    "EXIT_FAILURE",
    "TERMINATION_SIGNAL",
    "LOG_TIMESTAMP_FORMAT",
    "log_file_name",
    "cmd",
    "run",
    "run_async",
    "__version__",
]

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

# Exit code of a child whose executable could not be run.
EXIT_FAILURE = 1

TERMINATION_SIGNAL = signal.SIGTERM

LOG_TIMESTAMP_FORMAT = "_%Y%m%d%H%M%S"

# errno values Popen reports back from the child when exec (or chdir) fails.
_EXEC_ERRNOS = frozenset({
    errno.ENOENT,
    errno.EACCES,
    errno.ENOEXEC,
    errno.ENOTDIR,
    errno.ELOOP,
    errno.ENAMETOOLONG,
    errno.E2BIG,
})


class ProcessError(Exception):
    """Base class for every error raised by procline."""


class InvalidConfiguration(ProcessError, ValueError):
    """Raised when a command cannot be run as configured (e.g. no executable)."""


class AlreadyRunning(ProcessError):
    """Raised when a command or pipeline is busy with a live process."""


class SpawnError(ProcessError):
    """Raised when the OS refuses to create a child process."""
    def __init__(self, command: "Command", cause: OSError):
        self.command = command
        self.errno = cause.errno
        self.cause = cause
        super().__init__(
            f"Failed to spawn {command.argv!r}: "
            f"[Errno {cause.errno}] {cause.strerror or cause}"
        )


class PipelineSpawnError(SpawnError):
    """Raised when a pipeline stage fails to spawn; earlier stages are terminated."""
    def __init__(self, index: int, command: "Command", cause: Exception):
        self.index = index
        self.command = command
        self.cause = cause
        self.errno = getattr(cause, "errno", None)
        ProcessError.__init__(
            self, f"Pipeline stage {index} ({command.argv!r}) failed to spawn: {cause}"
        )


class TerminateError(ProcessError):
    """Raised when a termination signal could not be delivered."""
    def __init__(self, command: "Command", cause: OSError):
        self.command = command
        self.errno = cause.errno
        self.cause = cause
        super().__init__(f"Failed to signal pid {command.pid}: {cause}")


class CommandState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


class PipelineState(Enum):
    BUILT = "built"
    EXECUTING = "executing"
    COMPLETED = "completed"
    BROKEN = "broken"


class RunningStatus(Enum):
    NOT_RUNNING = "not_running"
    RUNNING = "running"


class PipelineStatus(IntEnum):
    """Result of Pipeline.is_running()."""
    NOT_RUNNING = 0
    RUNNING_CONTIGUOUS = 1
    BROKEN_MID_CHAIN = -1


_LIVE_STATES = (CommandState.STARTING, CommandState.RUNNING, CommandState.TERMINATING)


def log_file_name(
    prefix: str,
    argv0: str,
    stream: str,
    when: Optional[datetime] = None,
    tag: Optional[str] = None,
) -> str:
    """
    Build the log file path for a redirected stream.

    Format: ``{prefix}_{argv0}_{YYYYMMDDHHMMSS}.{stream}.log``. The leading
    ``{prefix}_`` is omitted when prefix is empty. A tag, when given, is
    appended to argv0 as ``{argv0}-{tag}`` to keep otherwise identical
    names apart.

    Args:
        prefix: Path prefix, may contain directories.
        argv0: Program name (argv[0]) of the command.
        stream: "stdout" or "stderr".
        when: Timestamp to embed; defaults to local now.
        tag: Optional disambiguator, e.g. a pipeline stage index.
    """
    when = when or datetime.now()
    head = f"{prefix}_" if prefix else ""
    if tag is not None:
        argv0 = f"{argv0}-{tag}"
    return f"{head}{argv0}{when.strftime(LOG_TIMESTAMP_FORMAT)}.{stream}.log"


@contextmanager
def _open_log_file(path: str) -> Iterator[int]:
    """Open a log file for the child and close the parent's descriptor on exit."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o666)
    try:
        yield fd
    finally:
        os.close(fd)


class PipeConnector:
    """
    One anonymous pipe joining a stage's stdout to the next stage's stdin.

    Both descriptors are non-inheritable; the child receives duplicates on
    its standard streams, so the parent must close its copies once the
    adjoining stages have spawned.
    """

    def __init__(self):
        self.read_fd, self.write_fd = os.pipe()
        self._read_open = True
        self._write_open = True

    @property
    def closed(self) -> bool:
        return not (self._read_open or self._write_open)

    def close_read(self) -> None:
        if self._read_open:
            self._read_open = False
            os.close(self.read_fd)

    def close_write(self) -> None:
        if self._write_open:
            self._write_open = False
            os.close(self.write_fd)

    def close(self) -> None:
        """Close both ends in this process. Safe to call repeatedly."""
        self.close_read()
        self.close_write()

    def __enter__(self) -> "PipeConnector":
        return self

    def __exit__(self, *args):
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else f"r={self.read_fd}, w={self.write_fd}"
        return f"PipeConnector({state})"


@dataclass(frozen=True)
class Inherit:
    """Stream is inherited from the parent process."""


@dataclass(frozen=True)
class ToLogFile:
    """Stream is written to a timestamped log file."""
    prefix: str = ""


@dataclass(frozen=True)
class ToPipe:
    """Stdout feeds a pipe (set only by Pipeline)."""
    connector: PipeConnector


@dataclass(frozen=True)
class FromPipe:
    """Stdin reads from a pipe (set only by Pipeline)."""
    connector: PipeConnector


OutputPolicy = Union[Inherit, ToLogFile, ToPipe]
InputPolicy = Union[Inherit, FromPipe]


@dataclass(frozen=True)
class EnvironmentPlan:
    """
    Environment a child will receive, computed without touching os.environ.

    If ``clear`` is set, the child sees only ``overrides``; otherwise
    ``overrides`` are applied on top of ``base``.
    """
    base: Mapping[str, str] = field(default_factory=dict)
    overrides: Mapping[str, str] = field(default_factory=dict)
    clear: bool = False

    @classmethod
    def inherited(cls, overrides: Mapping[str, str], clear: bool = False) -> "EnvironmentPlan":
        """Snapshot the current process environment as the base."""
        return cls(base=dict(os.environ), overrides=dict(overrides), clear=clear)

    def resolve(self) -> dict[str, str]:
        if self.clear:
            return dict(self.overrides)
        return {**self.base, **self.overrides}


class ProcessHandle:
    """OS-level identity and exit status of one spawned process."""

    def __init__(
        self,
        process: Optional[subprocess.Popen] = None,
        returncode: Optional[int] = None,
    ):
        self._process = process
        self._returncode = returncode

    @classmethod
    def launch(
        cls,
        argv: list[str],
        executable: str,
        *,
        stdin: Optional[int] = None,
        stdout: Optional[int] = None,
        stderr: Optional[int] = None,
        env: Optional[dict] = None,
        cwd: Optional[str] = None,
    ) -> "ProcessHandle":
        """
        Create the child process.

        Descriptors other than the three standard streams are closed in the
        child, so pipe ends held by the parent never leak into a stage.
        Raises OSError when the child cannot be created or cannot exec.
        """
        process = subprocess.Popen(
            argv,
            executable=executable,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            env=env,
            cwd=cwd,
            close_fds=True,
        )
        return cls(process)

    @classmethod
    def exec_failed(cls) -> "ProcessHandle":
        """A handle for a child that could not exec; it has already exited."""
        return cls(None, EXIT_FAILURE)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        if self._process is not None:
            return self._process.returncode
        return self._returncode

    def poll(self) -> Optional[int]:
        """Reap the child if it has exited; never blocks."""
        if self._process is None:
            return self._returncode
        return self._process.poll()

    def wait(self) -> int:
        """Block until the child exits. Repeat calls return the recorded code."""
        if self._process is None:
            return self._returncode
        return self._process.wait()

    def signal(self, sig: int) -> None:
        """Deliver sig unless the child has already been reaped."""
        if self._process is None:
            return
        self._process.send_signal(sig)

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, returncode={self.returncode})"


class Command:
    """
    One program invocation and the lifecycle of the process running it.

    States: IDLE -> STARTING -> RUNNING -> (TERMINATING ->) EXITED.
    Builders may only be called while no process is live. Spawning again
    from EXITED clears pid and exit status but keeps the configuration.

    Examples:
        Command("sh", "-c", "exit 3").execute_and_wait()  # 3
        Command("/usr/bin/foo").log_stdout_to_file("run").spawn()
        (cmd("cat data.txt") | cmd("wc -l")).execute_and_wait()
    """

    def __init__(
        self,
        executable: str = "",
        *arguments: str,
        env: Optional[Mapping[str, str]] = None,
        clear_env: bool = False,
        cwd: Optional[str] = None,
        argv0: Optional[str] = None,
    ):
        """
        Create a command.

        Args:
            executable: Absolute path, relative path, or a name looked up on PATH.
            *arguments: Arguments following argv[0].
            env: Environment overrides applied at spawn time.
            clear_env: If True, the child receives only ``env``.
            cwd: Optional working directory for the child.
            argv0: Override argv[0]; defaults to the executable's basename.
        """
        self._executable = ""
        self._argv0_override = argv0
        self._argv0 = argv0 or ""
        self._arguments: list[str] = [str(a) for a in arguments]
        self._env: dict[str, str] = dict(env or {})
        self._clear_env = clear_env
        self._cwd = cwd
        self._stdin_policy: InputPolicy = Inherit()
        self._stdout_policy: OutputPolicy = Inherit()
        self._stderr_policy: OutputPolicy = Inherit()
        self._stdout_pipe: Optional[ToPipe] = None

        self._state = CommandState.IDLE
        self._handle: Optional[ProcessHandle] = None
        self._pid: Optional[int] = None
        self._exit_status = 0
        self._terminate_requested = False

        # _lock guards state transitions; _reap_lock admits one reaper at a time.
        self._lock = threading.Lock()
        self._reap_lock = threading.Lock()
        # Signalled when a spawn leaves STARTING.
        self._spawned = threading.Condition(self._lock)

        self._set_executable(executable)

    # -- configuration -----------------------------------------------------

    def _check_mutable(self) -> None:
        if self._state in _LIVE_STATES:
            raise AlreadyRunning(
                f"Cannot reconfigure {self.argv!r} while pid {self._pid} is live"
            )

    def _set_executable(self, executable: Optional[str]) -> None:
        self._executable = executable or ""
        if self._argv0_override is None:
            self._argv0 = os.path.basename(self._executable)

    def set_executable(self, executable: str) -> "Command":
        """Set the program to run; argv[0] follows its basename unless overridden."""
        with self._lock:
            self._check_mutable()
            self._set_executable(executable)
        return self

    def set_argv0(self, argv0: Optional[str]) -> "Command":
        """Override argv[0]. Passing None restores the executable's basename."""
        with self._lock:
            self._check_mutable()
            self._argv0_override = argv0
            self._argv0 = argv0 or os.path.basename(self._executable)
        return self

    def append_argument(self, argument: str) -> "Command":
        with self._lock:
            self._check_mutable()
            self._arguments.append(str(argument))
        return self

    def append_arguments(self, arguments: Iterable[str]) -> "Command":
        with self._lock:
            self._check_mutable()
            self._arguments.extend(str(a) for a in arguments)
        return self

    def set_env(self, key: str, value: str) -> "Command":
        with self._lock:
            self._check_mutable()
            self._env[key] = value
        return self

    def update_env(self, env: Optional[Mapping[str, str]] = None, **kwargs: str) -> "Command":
        """Merge overrides into the environment plan."""
        with self._lock:
            self._check_mutable()
            self._env.update(env or {})
            self._env.update(kwargs)
        return self

    def clear_inherited_env(self, clear: bool = True) -> "Command":
        """If set, the child receives only the overrides, not os.environ."""
        with self._lock:
            self._check_mutable()
            self._clear_env = clear
        return self

    def set_cwd(self, cwd: Optional[str]) -> "Command":
        with self._lock:
            self._check_mutable()
            self._cwd = cwd
        return self

    def log_stdout_to_file(self, prefix: str = "") -> "Command":
        """
        Redirect stdout to ``{prefix}_{argv0}_{timestamp}.stdout.log``.

        A pipe connection made by a Pipeline takes precedence over this.
        """
        with self._lock:
            self._check_mutable()
            self._stdout_policy = ToLogFile(prefix or "")
            self._stdout_pipe = None
        return self

    def log_stderr_to_file(self, prefix: str = "") -> "Command":
        """Redirect stderr to ``{prefix}_{argv0}_{timestamp}.stderr.log``."""
        with self._lock:
            self._check_mutable()
            self._stderr_policy = ToLogFile(prefix or "")
        return self

    def inherit_stdout(self) -> "Command":
        with self._lock:
            self._check_mutable()
            self._stdout_policy = Inherit()
            self._stdout_pipe = None
        return self

    def inherit_stderr(self) -> "Command":
        with self._lock:
            self._check_mutable()
            self._stderr_policy = Inherit()
        return self

    @property
    def executable(self) -> str:
        return self._executable

    @property
    def application_name(self) -> str:
        return self._executable

    @property
    def argv0(self) -> str:
        return self._argv0

    @property
    def arguments(self) -> list[str]:
        return list(self._arguments)

    @property
    def argv(self) -> list[str]:
        """Full argument vector, argv[0] first."""
        return [self._argv0, *self._arguments]

    @property
    def env(self) -> dict[str, str]:
        return dict(self._env)

    @property
    def clear_env(self) -> bool:
        return self._clear_env

    @property
    def cwd(self) -> Optional[str]:
        return self._cwd

    @property
    def stdin_policy(self) -> InputPolicy:
        return self._stdin_policy

    @property
    def stdout_policy(self) -> OutputPolicy:
        """Configured policy, or ToPipe while a pipeline has wired stdout."""
        return self._stdout_pipe or self._stdout_policy

    @property
    def stderr_policy(self) -> OutputPolicy:
        return self._stderr_policy

    def environment_plan(self) -> EnvironmentPlan:
        return EnvironmentPlan.inherited(self._env, clear=self._clear_env)

    # -- lifecycle ---------------------------------------------------------

    @property
    def state(self) -> CommandState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._pid

    @property
    def exit_status(self) -> int:
        """Exit code of the last reaped process, 0 before that."""
        return self._exit_status

    @property
    def is_running(self) -> bool:
        return self.poll() is RunningStatus.RUNNING

    def spawn(self) -> Optional[int]:
        """
        Start the program and return its pid without waiting for it.

        The pid is None when the executable could not be run.

        Raises:
            InvalidConfiguration: No executable is set.
            AlreadyRunning: A process is live or being spawned.
            SpawnError: The OS could not create the process.

        An executable that cannot be found or executed is not an error here;
        the command exits with EXIT_FAILURE, visible from wait() or poll().
        """
        return self._spawn_with_streams()

    def _spawn_with_streams(
        self,
        stdin_source: Optional[PipeConnector] = None,
        stdout_sink: Optional[PipeConnector] = None,
        log_tag: Optional[str] = None,
    ) -> Optional[int]:
        """
        Spawn with optional pipe ends on stdin/stdout. Used by Pipeline.

        log_tag is added to log file names so stages sharing argv0 and a
        prefix do not write to the same file.
        """
        with self._lock:
            if not self._executable:
                raise InvalidConfiguration("Command has no executable set")
            if self._state in _LIVE_STATES:
                raise AlreadyRunning(f"{self.argv!r} is already running (pid {self._pid})")
            self._state = CommandState.STARTING
            self._handle = None
            self._pid = None
            self._exit_status = 0
            self._terminate_requested = False
            self._stdin_policy = FromPipe(stdin_source) if stdin_source is not None else Inherit()
            self._stdout_pipe = ToPipe(stdout_sink) if stdout_sink is not None else None

        try:
            handle = self._launch(stdin_source, stdout_sink, log_tag)
        except BaseException:
            with self._lock:
                self._state = CommandState.IDLE
                self._stdin_policy = Inherit()
                self._stdout_pipe = None
                self._spawned.notify_all()
            raise

        with self._lock:
            self._handle = handle
            self._pid = handle.pid
            self._state = CommandState.RUNNING
            logger.debug("Spawned %r as pid %s", self.argv, handle.pid)
            if self._terminate_requested:
                try:
                    self._send_termination(handle)
                except TerminateError:
                    pass  # already logged; the process stays RUNNING
            self._spawned.notify_all()
        return handle.pid

    def _launch(
        self,
        stdin_source: Optional[PipeConnector],
        stdout_sink: Optional[PipeConnector],
        log_tag: Optional[str] = None,
    ) -> ProcessHandle:
        stdout_policy: OutputPolicy = (
            ToPipe(stdout_sink) if stdout_sink is not None else self._stdout_policy
        )
        stderr_policy = self._stderr_policy
        argv = self.argv
        env = self.environment_plan().resolve()
        now = datetime.now()

        with ExitStack() as stack:
            try:
                stdout = self._open_output(stack, stdout_policy, "stdout", now, log_tag)
                stderr = self._open_output(stack, stderr_policy, "stderr", now, log_tag)
            except OSError as exc:
                raise SpawnError(self, exc) from exc
            stdin = stdin_source.read_fd if stdin_source is not None else None

            try:
                return ProcessHandle.launch(
                    argv,
                    self._executable,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    env=env,
                    cwd=self._cwd,
                )
            except OSError as exc:
                if exc.errno in _EXEC_ERRNOS:
                    logger.warning(
                        "Could not execute %s (%s); exiting with %d",
                        self._executable, exc.strerror, EXIT_FAILURE,
                    )
                    return ProcessHandle.exec_failed()
                raise SpawnError(self, exc) from exc

    def _open_output(
        self,
        stack: ExitStack,
        policy: OutputPolicy,
        stream: str,
        now: datetime,
        log_tag: Optional[str] = None,
    ) -> Optional[int]:
        if isinstance(policy, ToPipe):
            return policy.connector.write_fd
        if isinstance(policy, ToLogFile):
            path = log_file_name(policy.prefix, self._argv0, stream, now, log_tag)
            return stack.enter_context(_open_log_file(path))
        return None

    def poll(self) -> RunningStatus:
        """
        Check the process without blocking.

        Reaps it if it has exited. A poll that races a blocking wait() in
        another thread reports RUNNING rather than reaping twice.
        """
        with self._lock:
            handle = self._handle
        if handle is None:
            return RunningStatus.NOT_RUNNING
        if not self._reap_lock.acquire(blocking=False):
            return RunningStatus.RUNNING
        try:
            code = handle.poll()
        finally:
            self._reap_lock.release()
        if code is None:
            return RunningStatus.RUNNING
        self._record_exit(handle, code)
        return RunningStatus.NOT_RUNNING

    def wait(self) -> int:
        """
        Block until the process exits and return its exit code.

        Returns 0 immediately if no process is owned (never spawned, or
        already reaped).
        """
        with self._lock:
            handle = self._handle
        if handle is None:
            return 0
        return self._reap(handle)

    def _reap(self, handle: ProcessHandle) -> int:
        with self._reap_lock:
            code = handle.wait()
        self._record_exit(handle, code)
        return code

    def _collect(self) -> int:
        """Wait if a process is owned, else return the recorded exit status."""
        with self._lock:
            handle = self._handle
            if handle is None:
                return self._exit_status
        return self._reap(handle)

    def _record_exit(self, handle: ProcessHandle, code: int) -> None:
        with self._lock:
            if self._handle is not handle:
                return
            self._handle = None
            self._exit_status = code
            self._state = CommandState.EXITED
        logger.debug("Reaped pid %s (%r) with exit code %d", handle.pid, self.argv, code)

    def terminate(self, collect_exit_status: bool = False) -> Optional[int]:
        """
        Send SIGTERM to the running process.

        The signal is sent at most once per process; repeated calls while
        it is terminating do nothing. A request made while the process is
        still being spawned is delivered as soon as the spawn completes;
        with collect_exit_status it also blocks until that spawn finishes.

        Args:
            collect_exit_status: If True, also wait for the process and
                return its exit code.

        Raises:
            TerminateError: The signal could not be delivered.
        """
        with self._lock:
            if self._state is CommandState.STARTING:
                self._terminate_requested = True
                if not collect_exit_status:
                    return None
                while self._state is CommandState.STARTING:
                    self._spawned.wait()
                handle = self._handle
            else:
                handle = self._handle
                if handle is not None and self._state is CommandState.RUNNING:
                    self._send_termination(handle)
        if collect_exit_status:
            return self.wait() if handle is not None else self._collect()
        return None

    def _send_termination(self, handle: ProcessHandle) -> None:
        # Caller holds self._lock.
        self._state = CommandState.TERMINATING
        if handle.pid is None:
            # Exec failed; there is no process to signal.
            return
        try:
            handle.signal(TERMINATION_SIGNAL)
        except ProcessLookupError:
            pass
        except OSError as exc:
            self._state = CommandState.RUNNING
            logger.warning("Failed to terminate pid %s: %s", handle.pid, exc)
            raise TerminateError(self, exc) from exc
        logger.debug("Sent signal %d to pid %s", TERMINATION_SIGNAL, handle.pid)

    def execute_and_wait(self) -> int:
        """Spawn the command and block until it exits."""
        self.spawn()
        return self.wait()

    async def wait_async(self) -> int:
        """Await process exit without blocking the event loop."""
        return await asyncio.to_thread(self.wait)

    async def execute_and_wait_async(self) -> int:
        self.spawn()
        return await self.wait_async()

    def reset(self) -> "Command":
        """
        Terminate and reap any live process, then return to IDLE.

        Configuration (executable, arguments, environment, redirections)
        is kept.
        """
        self.terminate(collect_exit_status=True)
        with self._lock:
            if self._state is not CommandState.STARTING:
                self._state = CommandState.IDLE
                self._pid = None
                self._exit_status = 0
                self._stdin_policy = Inherit()
                self._stdout_pipe = None
        return self

    def copy(self) -> "Command":
        """Return an IDLE command with the same configuration."""
        new = Command(
            self._executable,
            *self._arguments,
            env=self._env,
            clear_env=self._clear_env,
            cwd=self._cwd,
            argv0=self._argv0_override,
        )
        new._stdout_policy = self._stdout_policy
        new._stderr_policy = self._stderr_policy
        return new

    __copy__ = copy

    def __or__(self, other: Union["Command", "Pipeline"]) -> "Pipeline":
        """
        Pipe this command's stdout to another command's stdin.

        Usage: cmd("ls") | cmd("grep foo")
        """
        if isinstance(other, Command):
            return Pipeline([self, other])
        if isinstance(other, Pipeline):
            return Pipeline([self, *other.stages])
        return NotImplemented

    def __repr__(self) -> str:
        return f"Command({self.argv!r}, state={self._state.value})"


class Pipeline:
    """
    An ordered chain of commands, each stage's stdout feeding the next stdin.

    States: BUILT -> EXECUTING -> COMPLETED | BROKEN. The pipeline owns the
    pipes between stages; stages stay individually inspectable, so per-stage
    exit codes are available from each Command.

    Examples:
        Pipeline([Command("cat", "log"), Command("grep", "ERROR")]).execute_and_wait()
        (cmd("printf 'a\\nb'") | cmd("sort -r") | cmd("head -n 1")).execute_and_wait()
    """

    def __init__(self, commands: Iterable[Command] = ()):
        self._stages: list[Command] = []
        self._connectors: list[PipeConnector] = []
        self._state = PipelineState.BUILT
        self._has_started = False
        self._exit_status = 0
        self._lock = threading.Lock()
        self._spawning = False
        self.extend(commands)

    @staticmethod
    def _validate(command: Command, index: int) -> None:
        if not isinstance(command, Command):
            raise InvalidConfiguration(
                f"Stage at index {index} is {type(command).__name__}, not a Command"
            )
        if not command.executable:
            raise InvalidConfiguration(
                f"Command at index {index} does not have a set application"
            )

    def append(self, command: Command) -> "Pipeline":
        """Append a stage. Fails immediately if it has no executable."""
        return self.extend([command])

    def extend(self, commands: Iterable[Command]) -> "Pipeline":
        """Append several stages; nothing is added if any of them is invalid."""
        commands = list(commands)
        with self._lock:
            if self._busy():
                raise AlreadyRunning("Cannot add stages to an executing pipeline")
            seen = {id(stage) for stage in self._stages}
            for offset, command in enumerate(commands):
                index = len(self._stages) + offset
                self._validate(command, index)
                if id(command) in seen:
                    raise InvalidConfiguration(
                        f"Command at index {index} is already a stage of this pipeline"
                    )
                seen.add(id(command))
            self._stages.extend(commands)
        return self

    @property
    def stages(self) -> tuple[Command, ...]:
        return tuple(self._stages)

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def has_started(self) -> bool:
        return self._has_started

    @property
    def exit_status(self) -> int:
        """Exit code of the last stage collected by wait(); 0 before that."""
        return self._exit_status

    @property
    def broken(self) -> bool:
        return self._state is PipelineState.BROKEN

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Command]:
        return iter(self.stages)

    def __getitem__(self, index: int) -> Command:
        return self._stages[index]

    def __or__(self, other: Union[Command, "Pipeline"]) -> "Pipeline":
        if isinstance(other, Command):
            return Pipeline([*self._stages, other])
        if isinstance(other, Pipeline):
            return Pipeline([*self._stages, *other._stages])
        return NotImplemented

    def execute(self) -> None:
        """
        Spawn every stage, head to tail, wired through pipes.

        For each stage the outgoing pipe is created first, then the stage is
        spawned, then the parent's copies of the pipe it consumes are closed.

        Raises:
            InvalidConfiguration: The pipeline is empty or a stage has no executable.
            AlreadyRunning: The pipeline is already executing, or a stage
                from a previous run is still alive.
            PipelineSpawnError: A stage failed to spawn. Stages already
                started are terminated and reaped first.
        """
        with self._lock:
            if self._busy():
                raise AlreadyRunning("Pipeline is already executing")
            if not self._stages:
                raise InvalidConfiguration("Pipeline has no stages")
            for index, stage in enumerate(self._stages):
                self._validate(stage, index)
            self._spawning = True
            self._state = PipelineState.EXECUTING
            self._has_started = True
            self._exit_status = 0
            stages = list(self._stages)

        last = len(stages) - 1
        names = Counter(stage.argv0 for stage in stages)
        try:
            for index, stage in enumerate(stages):
                stdin_source = self._connectors[-1] if index > 0 else None
                try:
                    stdout_sink = None
                    if index < last:
                        stdout_sink = PipeConnector()
                        self._connectors.append(stdout_sink)
                    log_tag = str(index) if names[stage.argv0] > 1 else None
                    stage._spawn_with_streams(stdin_source, stdout_sink, log_tag)
                except (ProcessError, OSError) as exc:
                    self._abort(stages[:index])
                    logger.warning("Pipeline aborted: stage %d failed to spawn: %s", index, exc)
                    raise PipelineSpawnError(index, stage, exc) from exc
                if stdin_source is not None:
                    stdin_source.close()
        finally:
            self._close_connectors()
            with self._lock:
                self._spawning = False

    def _busy(self) -> bool:
        # Caller holds self._lock. Busy means spawning or some stage still alive.
        if self._spawning:
            return True
        return any(stage.poll() is RunningStatus.RUNNING for stage in self._stages)

    def _abort(self, started: list[Command]) -> None:
        # Close pipes first so started stages see EOF/EPIPE.
        self._close_connectors()
        for stage in started:
            try:
                stage.terminate(collect_exit_status=True)
            except TerminateError as exc:
                logger.warning("Could not terminate stage %r: %s", stage, exc)
        with self._lock:
            self._state = PipelineState.BROKEN

    def _close_connectors(self) -> None:
        for connector in self._connectors:
            connector.close()
        self._connectors.clear()

    def is_running(self) -> PipelineStatus:
        """
        Report whether the chain is draining normally or broken.

        RUNNING_CONTIGUOUS: the running stages form a suffix of the chain.
        BROKEN_MID_CHAIN: some stage is running while a stage downstream
        of it has already exited.
        """
        if not self._has_started:
            return PipelineStatus.NOT_RUNNING

        running = False
        downstream_exited = False
        for stage in reversed(self._stages):
            if stage.poll() is RunningStatus.RUNNING:
                if downstream_exited:
                    return PipelineStatus.BROKEN_MID_CHAIN
                running = True
            else:
                downstream_exited = True

        if running:
            return PipelineStatus.RUNNING_CONTIGUOUS
        return PipelineStatus.NOT_RUNNING

    def wait(self) -> int:
        """
        Wait on each stage in order and return the aggregate exit status.

        As soon as a stage exits non-zero, every later stage is sent SIGTERM
        instead of being waited on, and the pipeline becomes BROKEN. The
        aggregate status is the exit code of the last stage actually
        collected.
        """
        if not self._has_started:
            return 0

        status = 0
        cut = False
        for stage in list(self._stages):
            if cut:
                try:
                    stage.terminate()
                except TerminateError as exc:
                    logger.warning("Could not terminate stage %r: %s", stage, exc)
                continue
            status = stage._collect()
            if status != 0 and stage is not self._stages[-1]:
                logger.debug("Stage %r exited with %d; cutting pipeline", stage, status)
                cut = True

        with self._lock:
            self._exit_status = status
            if cut:
                self._state = PipelineState.BROKEN
            elif self._state is PipelineState.EXECUTING:
                self._state = PipelineState.COMPLETED
        return status

    def terminate(self) -> None:
        """
        Send SIGTERM to every stage.

        All stages are attempted; the first failure is raised afterwards.

        Raises:
            TerminateError: At least one stage could not be signalled.
        """
        if not self._has_started:
            return
        first_error: Optional[TerminateError] = None
        for stage in list(self._stages):
            try:
                stage.terminate()
            except TerminateError as exc:
                logger.warning("Could not terminate stage %r: %s", stage, exc)
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    def execute_and_wait(self) -> int:
        """Execute the pipeline and wait for it; returns the aggregate status."""
        self.execute()
        return self.wait()

    async def wait_async(self) -> int:
        return await asyncio.to_thread(self.wait)

    async def execute_and_wait_async(self) -> int:
        self.execute()
        return await self.wait_async()

    def reset(self) -> "Pipeline":
        """Terminate and reap every stage and return to BUILT."""
        for stage in list(self._stages):
            stage.reset()
        with self._lock:
            self._state = PipelineState.BUILT
            self._has_started = False
            self._exit_status = 0
        return self

    def __repr__(self) -> str:
        stages = " | ".join(repr(stage.argv) for stage in self._stages)
        return f"Pipeline({stages})"


def cmd(*args: str, **kwargs) -> Command:
    """
    Create a Command. A single string containing spaces is split with
    shell lexing rules: cmd("ls -la") == Command("ls", "-la").
    """
    if len(args) == 1 and isinstance(args[0], str) and " " in args[0]:
        args = tuple(shlex.split(args[0]))
    return Command(*args, **kwargs)


def run(target: Union[str, Command, Pipeline], **kwargs) -> int:
    """
    Execute a command line, Command or Pipeline and wait for it.

    Usage:
        code = run("sh -c 'exit 3'")
        code = run(cmd("echo hi") | cmd("cat"))
    """
    if isinstance(target, str):
        target = cmd(target, **kwargs)
    return target.execute_and_wait()


async def run_async(target: Union[str, Command, Pipeline], **kwargs) -> int:
    """
    Asynchronous run().

    Usage:
        code = await run_async("sleep 1")
    """
    if isinstance(target, str):
        target = cmd(target, **kwargs)
    return await target.execute_and_wait_async()
