"""Command-line interface for kernel-bridge.

Usage:
    kbridge '1+1'                  # Run inline code
    kbridge script.py              # Run file
    echo "print(1)" | kbridge -    # Run from stdin
    kbridge                        # Interactive prompt (TTY)
"""

from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path
from typing import NoReturn

import click

from kernel_bridge import (
    BridgeConfig,
    BridgeError,
    BridgeInterpreter,
    ExecuteFailure,
    ExecuteOutput,
    LaunchError,
    Result,
    __version__,
)
from kernel_bridge._logging import configure_logging
from kernel_bridge.constants import DEFAULT_STATE_CAPACITY

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_RESULT_ERROR = 1
EXIT_CLI_ERROR = 2
EXIT_BRIDGE_ERROR = 125

PROMPT = ">>>"
CONTINUATION_PROMPT = "..."


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_result_json(result: Result, payload: ExecuteOutput | ExecuteFailure) -> str:
    output: dict[str, str] = {"result": result.value}
    if isinstance(payload, ExecuteOutput):
        output["output"] = payload.text
    else:
        output["failure"] = payload.detail
    return json.dumps(output, indent=2)


def exit_code_for(result: Result) -> int:
    return EXIT_SUCCESS if result is Result.SUCCESS else EXIT_RESULT_ERROR


def emit_result(result: Result, payload: ExecuteOutput | ExecuteFailure, *, json_output: bool) -> None:
    if json_output:
        click.echo(format_result_json(result, payload))
    elif isinstance(payload, ExecuteOutput):
        if payload.text:
            click.echo(payload.text)
    else:
        click.echo(click.style(payload.detail, fg="red"), err=True)


def run_once(interp: BridgeInterpreter, code: str, *, silent: bool, json_output: bool) -> int:
    """Interpret one snippet and return the CLI exit code."""
    result, payload = interp.interpret(code, silent=silent)
    emit_result(result, payload, json_output=json_output)
    return exit_code_for(result)


def run_repl(interp: BridgeInterpreter, *, silent: bool) -> int:
    """Read-eval-print loop: lines accumulate while the runtime reports incomplete input."""
    buffer: list[str] = []
    while True:
        prompt = CONTINUATION_PROMPT if buffer else PROMPT
        try:
            line = click.prompt(prompt, default="", show_default=False, prompt_suffix=" ")
        except click.Abort:
            click.echo()
            return EXIT_SUCCESS
        buffer.append(line)
        code = "\n".join(buffer)
        if not code.strip():
            buffer.clear()
            continue

        result, payload = interp.interpret(code, silent=silent)
        # An empty line ends a block even if the runtime still wants more
        if result is Result.INCOMPLETE and line.strip():
            continue
        buffer.clear()
        emit_result(result, payload, json_output=False)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("source", required=False)
@click.option("-c", "--code", "inline_code", help="Code to execute (alternative to SOURCE)")
@click.option("--silent", is_flag=True, help="Don't echo the value of a trailing expression")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output")
@click.option(
    "--state-capacity",
    type=click.IntRange(min=1),
    default=DEFAULT_STATE_CAPACITY,
    show_default=True,
    help="Maximum shared-state entries",
)
@click.option("--no-restart", is_flag=True, help="Don't relaunch the runtime after it exits")
@click.option("--runtime", "runtime", help="Runtime command line (default: bundled Python worker)")
@click.version_option(__version__, "-V", "--version", prog_name="kbridge")
def main(
    source: str | None,
    inline_code: str | None,
    silent: bool,
    json_output: bool,
    quiet: bool,
    verbose: bool,
    state_capacity: int,
    no_restart: bool,
    runtime: str | None,
) -> NoReturn:
    """Run code in an external runtime over the kernel bridge.

    SOURCE can be:

    \b
      - Inline code:  kbridge '1+1'
      - File path:    kbridge script.py
      - Stdin:        echo 'print(1)' | kbridge -

    With no SOURCE and a terminal on stdin, starts an interactive prompt.

    Examples:

    \b
      kbridge '1+1'                           # Prints 2
      kbridge --json 'x = 1' | jq .           # JSON output
      kbridge --runtime '/opt/repl --bridge' script.py
    """
    configure_logging(quiet=quiet, level="DEBUG" if verbose else None)

    code: str | None
    if inline_code:
        # -c/--code takes precedence
        code = inline_code
    elif source == "-":
        if sys.stdin.isatty():
            raise click.UsageError("No input provided. Pipe code to stdin or use -c flag.")
        code = sys.stdin.read()
    elif source:
        path = Path(source)
        code = path.read_text() if path.exists() and path.is_file() else source
    elif sys.stdin.isatty():
        code = None
    else:
        raise click.UsageError("No code provided. Provide SOURCE argument or use -c flag.")

    if code is not None and not code.strip():
        raise click.UsageError("Empty code provided.")

    try:
        runtime_command = tuple(shlex.split(runtime)) if runtime else None
    except ValueError as exc:
        raise click.UsageError(f"Invalid --runtime: {exc}") from exc
    if runtime is not None and not runtime_command:
        raise click.UsageError("Empty --runtime provided.")

    config = BridgeConfig(
        state_capacity=state_capacity,
        restart_on_failure=not no_restart,
        restart_on_completion=not no_restart,
        runtime_command=runtime_command,
    )

    try:
        with BridgeInterpreter(config=config) as interp:
            if code is None:
                exit_code = run_repl(interp, silent=silent)
            else:
                exit_code = run_once(interp, code, silent=silent, json_output=json_output)
    except LaunchError as e:
        click.echo(
            format_error(
                "Runtime could not be launched",
                e.message,
                ["Check the --runtime command", "Set KERNEL_BRIDGE_RUNTIME_COMMAND to a valid argv"],
            ),
            err=True,
        )
        exit_code = EXIT_BRIDGE_ERROR
    except BridgeError as e:
        click.echo(format_error("Bridge error", e.message), err=True)
        exit_code = EXIT_BRIDGE_ERROR

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
