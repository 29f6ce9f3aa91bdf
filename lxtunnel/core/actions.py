"""Minimal CI runner surface: action inputs, step outputs, masks, failure status.

Inputs arrive as ``INPUT_<NAME>`` environment variables.  Outputs are
appended to the file named by ``GITHUB_OUTPUT``; outside a runner they are
only logged.
"""
from __future__ import annotations

import logging
import os
import sys
import uuid

logger = logging.getLogger(__name__)

exit_code = 0


def _input_env_names(name: str) -> list[str]:
    key = name.upper().replace(" ", "_")
    names = [f"INPUT_{key}"]
    # Some runners translate hyphens to underscores in the env name
    if "-" in key:
        names.append(f"INPUT_{key.replace('-', '_')}")
    return names


def get_input(name: str, required: bool = False) -> str:
    """Return the trimmed value of action input *name* ("" if unset)."""
    value = ""
    for env_name in _input_env_names(name):
        value = os.environ.get(env_name, "").strip()
        if value:
            break
    if required and not value:
        raise ValueError(f"Input required and not supplied: {name}")
    return value


def set_output(name: str, value: str) -> None:
    """Publish a step output."""
    output_file = os.environ.get("GITHUB_OUTPUT", "")
    if not output_file:
        logger.info("Output %s=%s", name, value)
        return
    with open(output_file, "a", encoding="utf-8") as f:
        if "\n" in value:
            delimiter = f"ghadelimiter_{uuid.uuid4()}"
            f.write(f"{name}<<{delimiter}\n{value}\n{delimiter}\n")
        else:
            f.write(f"{name}={value}\n")


def set_secret(value: str) -> None:
    """Ask the runner to mask *value* in its own log."""
    if value and os.environ.get("GITHUB_ACTIONS") == "true":
        sys.stdout.write(f"::add-mask::{value}\n")
        sys.stdout.flush()


def set_failed(message: str) -> None:
    """Log *message* as an error and make the process exit non-zero."""
    global exit_code
    exit_code = 1
    logger.error(message)
