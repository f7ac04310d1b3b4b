"""Scoped switching of the effective user and group."""

import os
from contextlib import contextmanager
from typing import Iterator

from pgclusters.errors import ClusterError


@contextmanager
def owner_identity(uid: int, gid: int, accounts) -> Iterator[None]:
    """Acts as ``uid``/``gid`` for the duration of the block.

    Unprivileged processes cannot switch, so the block runs unchanged for
    them.  The previous identity is always restored, also when the block
    raises.
    """
    if os.geteuid() != 0 or uid == 0:
        yield
        return

    saved_uid = os.geteuid()
    saved_gid = os.getegid()
    saved_groups = os.getgroups()
    try:
        os.setgroups(accounts.group_members_gids(uid, gid))
        os.setegid(gid)
        os.seteuid(uid)
    except OSError as exc:
        os.seteuid(saved_uid)
        os.setegid(saved_gid)
        os.setgroups(saved_groups)
        raise ClusterError(f"Could not switch to user id {uid}: {exc}") from exc

    try:
        yield
    finally:
        os.seteuid(saved_uid)
        os.setegid(saved_gid)
        os.setgroups(saved_groups)


def readable_by(path: str, uid: int, gid: int, accounts) -> bool:
    with owner_identity(uid, gid, accounts):
        return os.access(path, os.R_OK, effective_ids=os.access in os.supports_effective_ids)
