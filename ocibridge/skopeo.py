"""Running skopeo as a subprocess and inspecting the container signature policy."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .reference import ImageReference

POLICY_PATH = "/etc/containers/policy.json"
INSECURE_ACCEPT_ANYTHING = "insecureAcceptAnything"


class SkopeoError(RuntimeError):
    """Raised when skopeo cannot be started or exits unsuccessfully."""


@dataclass(frozen=True)
class ContainerPolicy:
    """The parts of ``containers-policy.json`` that matter here: the default entry types."""

    default: tuple[str, ...] | None = None

    @classmethod
    def from_json(cls, text: str) -> ContainerPolicy:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Container policy must be a JSON object")
        default = data.get("default")
        if default is None:
            return cls(None)
        if not isinstance(default, list):
            raise ValueError("Container policy 'default' must be a list")
        types = []
        for entry in default:
            if not isinstance(entry, dict) or not isinstance(entry.get("type"), str):
                raise ValueError("Container policy entry is missing a string 'type'")
            types.append(entry["type"])
        return cls(tuple(types))

    def is_default_insecure(self) -> bool:
        """True if the default policy is exactly one ``insecureAcceptAnything`` entry."""
        return self.default is not None and self.default == (INSECURE_ACCEPT_ANYTHING,)


def container_policy_is_default_insecure(path: str | os.PathLike = POLICY_PATH) -> bool:
    """Read the policy file at ``path`` and report whether its default is insecure."""
    return ContainerPolicy.from_json(Path(path).read_text(encoding="utf-8")).is_default_insecure()


def new_cmd(program: str = "skopeo") -> list[str]:
    """Return the base argument vector for a skopeo invocation."""
    return [program]


async def copy(
    src: ImageReference,
    dest: ImageReference,
    authfile: str | os.PathLike | None = None,
) -> str:
    """Copy an image with ``skopeo copy`` and return the resulting manifest digest."""
    with tempfile.NamedTemporaryFile(prefix="digest") as digestfile:
        cmd = new_cmd()
        cmd += ["copy", "--digestfile", digestfile.name]
        if authfile is not None:
            cmd += ["--authfile", os.fspath(authfile)]
        cmd += [str(src), str(dest)]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SkopeoError("Failed to exec skopeo") from e
        try:
            _, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        if proc.returncode != 0:
            message = (stderr or b"").decode("utf-8", errors="replace")
            raise SkopeoError(f"skopeo failed: {message}\n")
        return Path(digestfile.name).read_text(encoding="utf-8").strip()