"""Subprocess execution service for pgclusters."""

import os
import pwd
import subprocess
from typing import Dict, List, Optional, Tuple

from pgclusters.errors import ExternalToolFailure

Owner = Tuple[int, int]


class CommandRunner:
    """Runs external PostgreSQL tools with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    @staticmethod
    def _identity_kwargs(owner: Optional[Owner]) -> Dict:
        if owner is None or os.geteuid() != 0:
            return {}
        uid, gid = owner
        if uid == 0:
            return {}
        try:
            user_name = pwd.getpwuid(uid).pw_name
            groups = os.getgrouplist(user_name, gid)
        except KeyError:
            groups = [gid]
        return {"user": uid, "group": gid, "extra_groups": groups}

    @staticmethod
    def _environment(env: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not env:
            return None
        full_env = os.environ.copy()
        full_env.update(env)
        return full_env

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        owner: Optional[Owner] = None,
        env: Optional[Dict[str, str]] = None,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        tool = os.path.basename(cmd[0])

        try:
            result = subprocess.run(
                cmd,
                text=True,
                capture_output=capture_output,
                timeout=effective_timeout,
                input=input_text,
                env=self._environment(env),
                cwd=cwd,
                **self._identity_kwargs(owner),
            )
        except FileNotFoundError as exc:
            raise ExternalToolFailure(
                f"Required command not found: {cmd[0]}. Is the matching PostgreSQL version installed?",
                tool=tool,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ExternalToolFailure(
                f"Command timed out after {effective_timeout}s: {cmd_str}", tool=tool
            ) from exc
        except OSError as exc:
            raise ExternalToolFailure(f"Failed to execute command: {cmd_str}. {exc}", tool=tool) from exc

        if capture_output and result.stdout:
            self.logger.debug("Command output: %s", result.stdout.strip())

        if result.returncode == 0:
            return result

        stderr = (result.stderr or "").strip() if capture_output else ""
        message = f"{tool} failed with exit code {result.returncode}: {cmd_str}"
        if stderr:
            message = f"{message}\n{stderr}"

        if check:
            raise ExternalToolFailure(message, tool=tool, returncode=result.returncode)

        self.logger.warning(message)
        return result

    def pipeline(
        self,
        producer: List[str],
        consumer: List[str],
        owner: Optional[Owner] = None,
        env: Optional[Dict[str, str]] = None,
    ):
        """Streams the output of ``producer`` into ``consumer``; both must succeed."""
        self.logger.debug("Executing: %s | %s", " ".join(producer), " ".join(consumer))
        identity = self._identity_kwargs(owner)
        full_env = self._environment(env)

        try:
            source = subprocess.Popen(producer, stdout=subprocess.PIPE, env=full_env, **identity)
        except OSError as exc:
            raise ExternalToolFailure(
                f"Failed to execute command: {' '.join(producer)}. {exc}",
                tool=os.path.basename(producer[0]),
            ) from exc

        try:
            sink = subprocess.Popen(consumer, stdin=source.stdout, env=full_env, **identity)
        except OSError as exc:
            source.kill()
            source.wait()
            raise ExternalToolFailure(
                f"Failed to execute command: {' '.join(consumer)}. {exc}",
                tool=os.path.basename(consumer[0]),
            ) from exc

        # the consumer owns the read end now
        if source.stdout:
            source.stdout.close()
        sink_code = sink.wait()
        source_code = source.wait()

        for cmd, code in ((producer, source_code), (consumer, sink_code)):
            if code != 0:
                tool = os.path.basename(cmd[0])
                raise ExternalToolFailure(
                    f"{tool} failed with exit code {code}: {' '.join(cmd)}",
                    tool=tool,
                    returncode=code,
                )
