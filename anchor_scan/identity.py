#
# anchor-scan - BLE anchor that runs server-issued beacon scan jobs
#

"""Persistent anchor identifier."""

import json
import logging
import os
import uuid

logger = logging.getLogger(__name__)

ANCHOR_ID_LENGTH = 12
DEFAULT_STATE_FILE = os.path.join("~", ".anchor-scan", "state.json")


def _valid_anchor_id(anchor_id) -> bool:
    return (isinstance(anchor_id, str)
            and "-" not in anchor_id
            and len(anchor_id) == ANCHOR_ID_LENGTH)


def generate_anchor_id() -> str:
    """Last group of a random UUID: 12 lowercase hex chars."""
    return str(uuid.uuid4()).split("-")[-1].lower()


def _read_state(path: str) -> dict:
    try:
        with open(path) as f:
            state = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning("Cannot read state file %s (%s), starting fresh", path, e)
        return {}
    return state if isinstance(state, dict) else {}


def load_anchor_id(path: str = DEFAULT_STATE_FILE) -> str:
    """Read the anchor id from *path*, generating and saving one if needed.

    Ids in the old format (containing '-' or not 12 characters long) are
    replaced.
    """
    path = os.path.expanduser(path)
    state = _read_state(path)
    saved = state.get("anchor_id")
    if _valid_anchor_id(saved):
        logger.info("Loaded existing anchor id: %s", saved)
        return saved
    if saved is not None:
        logger.info("Old anchor id format detected (%r), generating a new one", saved)

    anchor_id = generate_anchor_id()
    state["anchor_id"] = anchor_id
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(state, f, indent=2)
    logger.info("Generated and saved new anchor id: %s", anchor_id)
    return anchor_id
