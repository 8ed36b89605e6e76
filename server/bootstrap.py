# server/bootstrap.py
from __future__ import annotations
import logging
from pathlib import Path
from typing import Tuple, Union

from persistence.dir_json import IdentityDirectory
from persistence.messages_json import JsonMessageStore

log = logging.getLogger(__name__)


def init_persistence(storage_dir: Union[str, Path]) -> Tuple[IdentityDirectory, JsonMessageStore]:
    """
    Open (creating if needed) the identity directory and the message store.
    """
    directory = IdentityDirectory(storage_dir)
    store = JsonMessageStore(storage_dir)
    log.info("[persistence] %s ready (users=%d, messages=%d)",
             storage_dir, len(directory.list_users()), store.count_all())
    return directory, store
