"""Host-side helpers for ``setup-env``: tool checks, export files, shell profiles."""
from __future__ import annotations

import platform as host_platform
import re
import shlex
import shutil
from collections.abc import Iterable, Mapping
from pathlib import Path

from .config import AppConfig
from .errors import MissingToolError
from .runner import CommandRunner
from .target import Platform

EXPORT_FILENAMES: Mapping[Platform, str] = {
    Platform.AWS: "eks-env-vars.sh",
    Platform.AZURE: "aks-env-vars.sh",
    Platform.GCP: "gke-env-vars.sh",
}

_INSTALL_HINTS: Mapping[str, Mapping[str, str]] = {
    "aws": {
        "Linux": "https://docs.aws.amazon.com/cli/latest/userguide/getting-started-install.html",
        "macOS": "brew install awscli",
        "Windows": "winget install Amazon.AWSCLI",
    },
    "az": {
        "Linux": "https://learn.microsoft.com/cli/azure/install-azure-cli-linux",
        "macOS": "brew install azure-cli",
        "Windows": "winget install Microsoft.AzureCLI",
    },
    "gcloud": {
        "Linux": "https://cloud.google.com/sdk/docs/install#linux",
        "macOS": "brew install google-cloud-sdk",
        "Windows": "https://cloud.google.com/sdk/docs/install#windows",
    },
    "kubectl": {
        "Linux": "https://kubernetes.io/docs/tasks/tools/install-kubectl-linux/",
        "macOS": "brew install kubectl",
        "Windows": "https://kubernetes.io/docs/tasks/tools/install-kubectl-windows/",
    },
    "helm": {
        "Linux": "https://helm.sh/docs/intro/install/",
        "macOS": "brew install helm",
        "Windows": "winget install Helm.Helm",
    },
    "curl": {
        "Linux": "sudo apt-get install curl (Debian/Ubuntu) or sudo dnf install curl (RHEL/Fedora)",
        "macOS": "brew install curl",
        "Windows": "winget install cURL.cURL",
    },
    "bash": {
        "Linux": "sudo apt-get install bash (Debian/Ubuntu) or sudo dnf install bash (RHEL/Fedora)",
        "macOS": "brew install bash",
        "Windows": "Use Git Bash or WSL",
    },
}


def detect_host_os(system: str | None = None) -> str:
    """Return ``Linux``, ``macOS``, ``Windows`` or the raw system name."""
    name = system if system is not None else host_platform.system()
    lowered = name.lower()
    if lowered == "darwin":
        return "macOS"
    if lowered.startswith(("windows", "cygwin", "msys", "mingw")):
        return "Windows"
    if lowered == "linux":
        return "Linux"
    return name or "unknown"


def install_hint(tool: str, host_os: str | None = None) -> str:
    """Return installation guidance for *tool* on *host_os*."""
    resolved = host_os or detect_host_os()
    hints = _INSTALL_HINTS.get(tool, {})
    hint = hints.get(resolved)
    if hint is None:
        return f"Install '{tool}' and make sure it is on PATH."
    return f"Install {tool}: {hint}"


def check_tools(
    names: Iterable[str],
    config: AppConfig,
    runner: CommandRunner,
    *,
    host_os: str | None = None,
) -> dict[str, str]:
    """Return resolved paths for *names*; raise :class:`MissingToolError` naming every gap."""
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for name in names:
        path = runner.which(config.tools.binary(name))
        if path is None:
            missing.append(name)
        else:
            resolved[name] = path
    if missing:
        hints = "\n".join(install_hint(tool, host_os) for tool in missing)
        raise MissingToolError(", ".join(missing), hint=hints)
    return resolved


def render_exports(variables: Mapping[str, str]) -> str:
    """Return ``export NAME="value"`` lines for *variables*."""
    return "".join(f"export {name}={_quote(value)}\n" for name, value in variables.items())


def write_export_file(work_dir: Path, platform: Platform, variables: Mapping[str, str]) -> Path:
    """Write the sourceable export file for *platform* and return its path."""
    path = work_dir / EXPORT_FILENAMES[platform]
    path.parent.mkdir(parents=True, exist_ok=True)
    body = (
        "#!/bin/bash\n"
        f"# Generated by harmonyctl setup-env --platform {platform.value}\n"
        f"{render_exports(variables)}"
    )
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


def detect_profile(env: Mapping[str, str], home: Path | None = None) -> Path:
    """Return the shell profile to update, based on ``$SHELL``."""
    base = home or Path(env.get("HOME") or Path.home())
    shell = Path(env.get("SHELL", "")).name
    if shell == "zsh":
        return base / ".zshrc"
    if shell == "bash":
        bashrc = base / ".bashrc"
        if not bashrc.exists() and (base / ".bash_profile").exists():
            return base / ".bash_profile"
        return bashrc
    return base / ".profile"


def persist_exports(profile: Path, variables: Mapping[str, str]) -> list[str]:
    """Replace or append export lines in *profile*; return the names that were updated.

    A ``.bak`` copy of an existing profile is kept before it is rewritten.
    """
    original = profile.read_text(encoding="utf-8") if profile.exists() else ""
    if profile.exists():
        shutil.copy2(profile, profile.with_name(profile.name + ".bak"))

    lines = original.splitlines()
    updated: list[str] = []
    for name, value in variables.items():
        line = f"export {name}={_quote(value)}"
        pattern = re.compile(rf"^\s*export\s+{re.escape(name)}=")
        matches = [index for index, existing in enumerate(lines) if pattern.match(existing)]
        if matches:
            for index in matches:
                lines[index] = line
            updated.append(name)
        else:
            lines.append(line)

    profile.parent.mkdir(parents=True, exist_ok=True)
    profile.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return updated


def _quote(value: str) -> str:
    if re.fullmatch(r"[A-Za-z0-9_./:@-]*", value):
        return f'"{value}"'
    return shlex.quote(value)


__all__ = [
    "EXPORT_FILENAMES",
    "check_tools",
    "detect_host_os",
    "detect_profile",
    "install_hint",
    "persist_exports",
    "render_exports",
    "write_export_file",
]
