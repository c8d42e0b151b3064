"""
Error mapping and CLI utilities.

Provides centralized exception-to-exit-code mapping and a CLI command wrapper
so every Typer command handles errors the same way.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

import typer

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Exit codes:
#   0   every job succeeded
#   1   at least one job failed, or a single registry operation failed
#   2   invalid input or configuration
#   3   unexpected error
#   130 cancelled by operator
EXIT_CODES = {
    "OciNotFound": 1,
    "OciAuthError": 1,
    "OciNetworkError": 1,
    "OciRateLimited": 1,
    "OciDigestMismatch": 1,
    "OciSizeMismatch": 1,
    "OciValidationError": 1,
    "OciUnsupportedMediaType": 1,
    "OciParseError": 2,
    "ValueError": 2,
    "FileNotFoundError": 2,
    "KeyboardInterrupt": 130,
    "OciCancelled": 130,
}


def exit_code_for(exc: BaseException) -> int:
    """
    Map exception to standardized exit code.

    Args:
        exc: Exception to map

    Returns:
        Exit code, with 3 as fallback for unknown exceptions
    """
    return EXIT_CODES.get(type(exc).__name__, 3)


def run_and_exit(func: Callable[[], T]) -> T:
    """
    Unified error wrapper for CLI commands.

    Executes the given function and maps any exceptions to appropriate
    exit codes using typer.Exit. ``typer.Exit`` raised by the command itself
    passes through unchanged.

    Raises:
        typer.Exit: With appropriate exit code if function raises exception
    """
    try:
        return func()
    except typer.Exit:
        raise
    except (Exception, KeyboardInterrupt) as e:
        code = exit_code_for(e)
        if code == 3:
            logger.exception("Unexpected error")
        else:
            typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=code) from e
