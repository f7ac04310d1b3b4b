"""System account lookups for pgclusters."""

import grp
import os
import pwd
from typing import Optional


class AccountService:
    """Resolves users and groups through the system account databases."""

    def user_name(self, uid: int) -> Optional[str]:
        try:
            return pwd.getpwuid(uid).pw_name
        except KeyError:
            return None

    def group_name(self, gid: int) -> Optional[str]:
        try:
            return grp.getgrgid(gid).gr_name
        except KeyError:
            return None

    def resolve_user(self, user: str):
        """Returns ``(uid, primary gid)`` for a user name or numeric id."""
        try:
            entry = pwd.getpwuid(int(user)) if user.isdigit() else pwd.getpwnam(user)
        except KeyError:
            return None
        return entry.pw_uid, entry.pw_gid

    def resolve_group(self, group: str) -> Optional[int]:
        try:
            return grp.getgrgid(int(group)).gr_gid if group.isdigit() else grp.getgrnam(group).gr_gid
        except KeyError:
            return None

    def group_members_gids(self, uid: int, gid: int):
        name = self.user_name(uid)
        if name is None:
            return [gid]
        return os.getgrouplist(name, gid)

    def is_privileged(self) -> bool:
        return os.geteuid() == 0
