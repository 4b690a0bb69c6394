"""
Process Controller

Drives the managed nginx through its own CLI: ``nginx -t`` checks the
configuration on disk, ``nginx -s reload`` signals the master to pick it up.
Reload only runs after a passing config test.  Combined stdout/stderr of
every invocation is kept on the result and logged verbatim.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Sequence, Tuple

logger = logging.getLogger(__name__)

TEST_FLAGS: Tuple[str, ...] = ("-t",)
RELOAD_FLAGS: Tuple[str, ...] = ("-s", "reload")


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    command: str
    exit_code: int | None
    output: str

    def describe(self) -> str:
        if self.exit_code is None:
            return f"`{self.command}` did not run: {self.output}"
        return f"`{self.command}` exited with {self.exit_code}"


class NginxController:
    def __init__(self, *, nginx_bin: str = "nginx", timeout_s: float = 60.0) -> None:
        self._nginx_bin = nginx_bin
        self._timeout_s = timeout_s

    def _run(self, flags: Sequence[str]) -> CommandResult:
        argv = [self._nginx_bin, *flags]
        command = " ".join(argv)
        try:
            proc = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                timeout=self._timeout_s,
                check=False,
            )
        except subprocess.TimeoutExpired:
            result = CommandResult(
                ok=False,
                command=command,
                exit_code=None,
                output=f"timeout after {self._timeout_s:.0f}s",
            )
        except OSError as exc:
            result = CommandResult(ok=False, command=command, exit_code=None, output=str(exc))
        else:
            result = CommandResult(
                ok=proc.returncode == 0,
                command=command,
                exit_code=proc.returncode,
                output=(proc.stdout or "").strip(),
            )

        if result.ok:
            logger.info("%s ok%s", command, f":\n{result.output}" if result.output else "")
        else:
            logger.error("%s failed:\n%s", result.describe(), result.output)
        return result

    def validate(self) -> CommandResult:
        return self._run(TEST_FLAGS)

    def reload(self) -> CommandResult:
        return self._run(RELOAD_FLAGS)

    def apply(self) -> CommandResult:
        """Config test, then reload.  Returns the first failing step's result."""
        result = self.validate()
        if not result.ok:
            return result
        return self.reload()
