"""
Operations package - CLI support layer.

Keeps error mapping and output formatting out of the Typer commands.
"""
from .mappers import exit_code_for, run_and_exit

__all__ = ["exit_code_for", "run_and_exit"]
