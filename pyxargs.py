#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Paul Tiffany
# Project: pyxargs - Run a command with arguments read from stdin

"""
pyxargs - Build command lines from standard input and run them in batches.

A single-file, zero-dependency tool that splits its input into arguments,
packs as many as fit the host's argument-length limit (or the -n / -s
ceilings) into each invocation, and runs the command once per batch.
A command exiting with status 255 stops further batches.
"""

import argparse
import os
import re
import struct
import subprocess
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterator, Optional, TextIO, Union

# Project metadata
__version__ = "1.0.0"
__license__ = "MIT"

# --- Configuration ---
ENV_RESERVE = 2048  # POSIX headroom for the invoked utility
FALLBACK_ARG_MAX = 131072
POINTER_SIZE = struct.calcsize("P")
STOP_STATUS = 255
READ_CHUNK = 64 * 1024
TTY_PATH = "/dev/tty"
DEFAULT_COMMAND = ["echo"]

EXIT_INVOCATION_FAILED = 123
EXIT_STOPPED = 124
EXIT_SIGNALED = 125
EXIT_CANNOT_RUN = 126
EXIT_NOT_FOUND = 127

_SPACE = re.compile(rb"\s*")
_TOKEN = re.compile(rb"\S+")


@dataclass
class XargsOptions:
    """Everything the batch loop needs to know about one run."""

    command: list[bytes] = field(default_factory=lambda: [os.fsencode(c) for c in DEFAULT_COMMAND])
    null_delimited: bool = False
    eof_string: Optional[bytes] = None
    max_args: int = 0
    max_bytes: int = 0
    open_tty: bool = False
    interactive: bool = False
    no_run_if_empty: bool = False
    verbose: bool = False


# --- Errors ---


class XargsError(Exception):
    """Base exception for pyxargs operations."""

    def __init__(self, message: str, status: int = 1) -> None:
        super().__init__(message)
        self.status = status


class ArgumentTooLong(XargsError):
    """A single argument can never fit the per-command byte budget."""

    def __init__(self) -> None:
        super().__init__("argument too long")


class CommandError(XargsError):
    """The command could not be started."""


# --- Host Limits ---


def host_arg_max() -> int:
    """Return the system limit on exec() argument plus environment bytes."""
    try:
        value = os.sysconf("SC_ARG_MAX")
    except (AttributeError, ValueError, OSError):
        return FALLBACK_ARG_MAX
    return value if value > 0 else FALLBACK_ARG_MAX


def environ_bytes() -> int:
    """Size of the environment block as exec() sees it, pointer slots included."""
    total = POINTER_SIZE
    for name, value in os.environ.items():
        total += POINTER_SIZE + len(os.fsencode(name)) + len(os.fsencode(value)) + 2
    return total


def effective_max_bytes(requested: int = 0) -> int:
    """Clamp a requested byte budget to what the host can actually exec."""
    ceiling = host_arg_max() - environ_bytes() - ENV_RESERVE
    if not requested or requested > ceiling:
        return ceiling
    return requested


def prefix_bytes(command: list[bytes]) -> int:
    return sum(len(arg) + 1 for arg in command) - 1


# --- Input ---


def read_records(stream: BinaryIO, delimiter: bytes) -> Iterator[bytes]:
    """Yield delimiter-terminated records from a binary stream, delimiter stripped."""
    parts: list[bytes] = []
    while True:
        chunk = stream.read1(READ_CHUNK)
        if not chunk:
            if parts:
                yield b"".join(parts)
            return
        # Only the new chunk is searched; a long record is joined once.
        start = 0
        end = chunk.find(delimiter)
        while end >= 0:
            parts.append(chunk[start:end])
            yield b"".join(parts)
            parts = []
            start = end + 1
            end = chunk.find(delimiter, start)
        if start < len(chunk):
            parts.append(chunk[start:])


# --- Tokenizer ---


@dataclass(frozen=True)
class NeedMoreData:
    """Line fully consumed; read another one."""


@dataclass(frozen=True)
class Leftover:
    """A limit was hit; tokenizing resumes at ``offset`` in the next batch."""

    offset: int


@dataclass(frozen=True)
class LimitHitAllConsumed:
    """The entry ceiling was reached and nothing but whitespace remains."""


@dataclass(frozen=True)
class StopStringMatched:
    """The stop string was read; nothing after it is ever collected."""


Outcome = Union[NeedMoreData, Leftover, LimitHitAllConsumed, StopStringMatched]

NEED_MORE = NeedMoreData()
LIMIT_HIT = LimitHitAllConsumed()
STOP_MATCHED = StopStringMatched()


@dataclass
class BatchState:
    """Running counters for the batch being assembled."""

    null_delimited: bool = False
    max_args: int = 0
    max_bytes: int = 0
    eof_string: Optional[bytes] = None
    entries: int = 0
    byte_count: int = 0

    def reset(self, start_bytes: int) -> None:
        self.entries = 0
        self.byte_count = start_bytes


def tokenize(line: bytes, state: BatchState, out: Optional[list[bytes]] = None) -> Outcome:
    """Account the tokens of one record against ``state``.

    With ``out`` left as None only the counters move (counting pass);
    otherwise each accepted token is appended to ``out`` (filling pass).
    Both passes stop at the same place for the same starting state.
    """
    if state.null_delimited:
        state.byte_count += POINTER_SIZE + len(line) + 1
        if state.max_bytes and state.byte_count >= state.max_bytes:
            return Leftover(0)
        if state.max_args and state.entries >= state.max_args:
            return Leftover(0)
        if out is not None:
            out.append(line)
        state.entries += 1
        return NEED_MORE

    # A NUL ends the text of the line, as it would for a C string.
    end = line.find(b"\0")
    if end >= 0:
        line = line[:end]

    pos = 0
    while pos < len(line):
        pos = _SPACE.match(line, pos).end()
        if state.max_args and state.entries >= state.max_args:
            return Leftover(pos) if pos < len(line) else LIMIT_HIT
        if pos == len(line):
            break
        token = _TOKEN.match(line, pos).group()
        # Pointer slots are not counted here, matching busybox and findutils.
        state.byte_count += len(token) + 1
        if state.max_bytes and state.byte_count >= state.max_bytes:
            return Leftover(pos)
        if state.eof_string is not None and token == state.eof_string:
            return STOP_MATCHED
        if out is not None:
            out.append(token)
        state.entries += 1
        pos += len(token)
    return NEED_MORE


# --- Batch Accumulator ---


@dataclass
class Batch:
    argv: list[bytes]
    entries: int


class BatchAccumulator:
    """Cut the record stream into batches that fit the configured limits."""

    def __init__(self, records: Iterator[bytes], options: XargsOptions) -> None:
        self._records = records
        self._options = options
        self._prefix_bytes = prefix_bytes(options.command)
        self._carry: Optional[bytes] = None
        self.exhausted = False
        self.stopped = False

    @property
    def finished(self) -> bool:
        """True once no further batch can collect anything."""
        return self.stopped or (self.exhausted and self._carry is None)

    def _new_state(self) -> BatchState:
        state = BatchState(
            null_delimited=self._options.null_delimited,
            max_args=self._options.max_args,
            max_bytes=self._options.max_bytes,
            eof_string=self._options.eof_string,
        )
        state.reset(self._prefix_bytes)
        return state

    def _next_line(self) -> Optional[bytes]:
        if self._carry is not None:
            line, self._carry = self._carry, None
            return line
        line = next(self._records, None)
        if line is None:
            self.exhausted = True
        return line

    def next_batch(self) -> Batch:
        """Find the next batch boundary, then build that batch's argument vector."""
        state = self._new_state()
        pending: list[bytes] = []
        while not self.stopped:
            line = self._next_line()
            if line is None:
                break
            pending.append(line)
            outcome = tokenize(line, state)
            if isinstance(outcome, NeedMoreData):
                continue
            if isinstance(outcome, Leftover):
                if not state.entries:
                    raise ArgumentTooLong()
                self._carry = line[outcome.offset :]
            elif isinstance(outcome, StopStringMatched):
                self.stopped = True
            break

        state = self._new_state()
        tokens: list[bytes] = []
        for line in pending:
            tokenize(line, state, tokens)
        return Batch(argv=list(self._options.command) + tokens, entries=len(tokens))


# --- Executor ---


class ControlTerminal:
    """The controlling terminal, opened on first use and kept open."""

    def __init__(self, path: str = TTY_PATH) -> None:
        self.path = path
        self._handle: Optional[BinaryIO] = None

    def _open(self) -> BinaryIO:
        if self._handle is None:
            try:
                # Unbuffered so an answer never consumes input past its own line.
                self._handle = open(self.path, "rb", buffering=0)  # noqa: SIM115
            except OSError as e:
                raise XargsError(f"Cannot open {self.path}: {e.strerror or e}") from e
        return self._handle

    def ask(self) -> bool:
        """Read one answer line; only a leading y or Y means yes."""
        answer = self._open().readline().strip()
        return answer[:1] in (b"y", b"Y")

    def fileno(self) -> int:
        return self._open().fileno()

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None


@dataclass(frozen=True)
class ChildExit:
    """How a child ended: shell-style status, and whether a signal ended it."""

    status: int
    signaled: bool = False


def decode_status(returncode: int) -> ChildExit:
    """Map a subprocess return code to a shell-style exit status."""
    if returncode < 0:
        return ChildExit(128 - returncode, signaled=True)
    return ChildExit(returncode)


class Executor:
    """Run one batch: optional trace/prompt, then spawn and wait."""

    def __init__(
        self,
        options: XargsOptions,
        terminal: ControlTerminal,
        diag: Optional[TextIO] = None,
    ) -> None:
        self.options = options
        self.terminal = terminal
        self.diag = diag

    def _echo(self, argv: list[bytes]) -> bool:
        diag = self.diag or sys.stderr
        diag.write("".join(os.fsdecode(arg) + " " for arg in argv))
        if self.options.interactive:
            diag.write("?")
            diag.flush()
            return self.terminal.ask()
        diag.write("\n")
        diag.flush()
        return True

    def execute(self, argv: list[bytes]) -> Optional[ChildExit]:
        """Return the decoded exit status, or None if the user declined."""
        if (self.options.verbose or self.options.interactive) and not self._echo(argv):
            return None

        stdin = self.terminal.fileno() if self.options.open_tty else subprocess.DEVNULL
        name = os.fsdecode(argv[0])
        try:
            proc = subprocess.run(argv, stdin=stdin, check=False)
        except FileNotFoundError as e:
            raise CommandError(f"{name}: No such file or directory", EXIT_NOT_FOUND) from e
        except OSError as e:
            raise CommandError(f"{name}: {e.strerror or e}", EXIT_CANNOT_RUN) from e
        return decode_status(proc.returncode)


# --- Loop Controller ---


def run_batches(
    options: XargsOptions,
    stream: BinaryIO,
    execute: Optional[Callable[[list[bytes]], Optional[ChildExit]]] = None,
) -> int:
    """Run the command once per batch of input and return the exit status.

    Empty batches run unless -r is set. The one exception is a batch that
    holds nothing but the stop string after an earlier batch has started.
    A command exiting 255 stops the loop immediately; so does the end of
    the batch that contained the stop string.
    """
    delimiter = b"\0" if options.null_delimited else b"\n"
    accumulator = BatchAccumulator(read_records(stream, delimiter), options)
    terminal = ControlTerminal()
    if execute is None:
        execute = Executor(options, terminal).execute

    status = 0
    started = 0
    try:
        while not accumulator.finished:
            batch = accumulator.next_batch()
            if not batch.entries and (
                options.no_run_if_empty or (accumulator.stopped and started)
            ):
                continue
            started += 1

            result = execute(batch.argv)
            if result is None or not result.status:
                continue
            if result.status == STOP_STATUS:
                print(
                    f"Warning: {os.fsdecode(batch.argv[0])} exited with status 255; stopping",
                    file=sys.stderr,
                )
                return EXIT_STOPPED
            status = max(status, EXIT_SIGNALED if result.signaled else EXIT_INVOCATION_FAILED)
    finally:
        terminal.close()
    return status


# --- CLI and Main Execution ---


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid number '{value}'") from e
    if number < 1:
        raise argparse.ArgumentTypeError(f"number must be >= 1, got {number}")
    return number


def _non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid number '{value}'") from e
    if number < 0:
        raise argparse.ArgumentTypeError(f"number must be >= 0, got {number}")
    return number


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pyxargs",
        description="Run COMMAND one or more times, appending arguments from stdin.",
        epilog="If COMMAND exits with 255, no further command is launched.",
    )
    stop_group = parser.add_mutually_exclusive_group()
    stop_group.add_argument(
        "-0", "--null", action="store_true", help="Arguments are NUL terminated, no whitespace splitting"
    )
    stop_group.add_argument("-E", "--eof", metavar="STR", help="Stop at an argument equal to STR")
    parser.add_argument(
        "-n", "--max-args", type=_positive_int, metavar="NUM", help="Max number of arguments per command"
    )
    parser.add_argument(
        "-o", "--open-tty", action="store_true", help="Open tty for COMMAND's stdin (default /dev/null)"
    )
    parser.add_argument(
        "-p", "--interactive", action="store_true", help="Prompt for y/n from tty before each command"
    )
    parser.add_argument(
        "-r", "--no-run-if-empty", action="store_true", help="Don't run command with empty input"
    )
    parser.add_argument(
        "-s",
        "--max-chars",
        type=_non_negative_int,
        default=0,
        metavar="NUM",
        help="Size in bytes per command line (clamped to the host limit)",
    )
    parser.add_argument(
        "-t", "--verbose", action="store_true", help="Trace, print command line to stderr"
    )
    parser.add_argument(
        "--show-limits", action="store_true", help="Show command-line length limits and exit"
    )
    parser.add_argument("--version", action="version", version=f"pyxargs {__version__}")
    parser.add_argument(
        "command", nargs=argparse.REMAINDER, help="Command and leading arguments (default: echo)"
    )
    return parser


def options_from_args(args: argparse.Namespace) -> XargsOptions:
    """Turn parsed CLI arguments into batch options."""
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    return XargsOptions(
        command=[os.fsencode(arg) for arg in (command or DEFAULT_COMMAND)],
        null_delimited=args.null,
        eof_string=os.fsencode(args.eof) if args.eof is not None else None,
        max_args=args.max_args or 0,
        max_bytes=effective_max_bytes(args.max_chars),
        open_tty=args.open_tty,
        interactive=args.interactive,
        no_run_if_empty=args.no_run_if_empty,
        verbose=args.verbose,
    )


def format_limits() -> str:
    env = environ_bytes()
    arg_max = host_arg_max()
    return (
        f"Environment size: {env:,} bytes\n"
        f"Host argument limit: {arg_max:,} bytes\n"
        f"Reserved headroom: {ENV_RESERVE:,} bytes\n"
        f"Effective max bytes per command: {effective_max_bytes():,}"
    )


def main() -> int:
    """Run the main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    if args.show_limits:
        print(format_limits())
        return 0

    try:
        options = options_from_args(args)
        return run_batches(options, sys.stdin.buffer)

    except XargsError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.status
    except KeyboardInterrupt:
        print("\nCancelled by user", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 1


def cli_entrypoint() -> None:
    """Console entry point (kept tiny so tests can patch sys.exit)."""
    sys.exit(main())


if __name__ == "__main__":
    cli_entrypoint()
