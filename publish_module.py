#!/usr/bin/env python3
"""Publish the escrow Move package to an Aptos network.

Usage:
  publish_module.py <package-dir> [--profile NAME] [--dry-run]

Wraps `aptos move publish`. The signing key and node come from
APTOS_PRIVATE_KEY (handed to the CLI in an owner-only temp file) and
APTOS_NODE_URL, the named address `escrow_addr`
from APTOS_DEPLOYER_ADDRESS (or the signer's own address).
Deploy-time only: the server never calls this.
"""

import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field

from crypto import aptos_account_address, decode_key_material, ed25519_privkey_to_pubkey


PUBLISH_TIMEOUT = 300  # compiling + publishing a package can be slow
NAMED_ADDRESS = "escrow_addr"


class PublishError(Exception):
    """Publication failed: CLI missing, timed out or exited non-zero."""

    def __init__(self, message: str, returncode: int | None = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


@dataclass
class PublishResult:
    package_dir: str
    deployer: str
    stdout: str
    stderr: str = ""
    command: list[str] = field(default_factory=list)


def build_command(package_dir: str, deployer: str, node_url: str = "", private_key_file: str = "",
                  profile: str = "", cli: str = "aptos") -> list[str]:
    """Argument vector for `aptos move publish` (no shell involved).

    The signing key is referenced by file path only; key material never
    appears in the argument vector.
    """
    cmd = [
        cli, "move", "publish",
        "--package-dir", package_dir,
        "--named-addresses", f"{NAMED_ADDRESS}={deployer}",
        "--assume-yes",
    ]
    if profile:
        cmd += ["--profile", profile]
    else:
        if private_key_file:
            cmd += ["--private-key-file", private_key_file]
        if node_url:
            cmd += ["--url", node_url]
    return cmd


def resolve_deployer(env: dict) -> str:
    if env.get("APTOS_DEPLOYER_ADDRESS"):
        return env["APTOS_DEPLOYER_ADDRESS"]
    key = env.get("APTOS_PRIVATE_KEY", "")
    if not key:
        raise PublishError("Set APTOS_DEPLOYER_ADDRESS or APTOS_PRIVATE_KEY")
    try:
        priv = decode_key_material(key, expected_len=32)
    except ValueError:
        raise PublishError("APTOS_PRIVATE_KEY is not valid hex or base64")
    return aptos_account_address(ed25519_privkey_to_pubkey(priv))


def _write_key_file(private_key: str) -> str:
    """Owner-only temp file holding the key. Caller removes it."""
    fd, path = tempfile.mkstemp(prefix="aptos-key-")
    with os.fdopen(fd, "w") as f:
        f.write(private_key)
    return path


def publish(package_dir: str, env: dict | None = None, profile: str = "",
            timeout: int = PUBLISH_TIMEOUT, runner=subprocess.run) -> PublishResult:
    """Compile and publish *package_dir*. Raises PublishError on any failure."""
    env = os.environ if env is None else env
    if not os.path.isdir(package_dir):
        raise PublishError(f"Package directory not found: {package_dir}")
    cli = env.get("APTOS_CLI", "aptos")
    if runner is subprocess.run and shutil.which(cli) is None:
        raise PublishError(f"Aptos CLI not found on PATH: {cli}")

    deployer = resolve_deployer(env)
    private_key = env.get("APTOS_PRIVATE_KEY", "")
    key_file = _write_key_file(private_key) if private_key and not profile else ""
    cmd = build_command(
        package_dir, deployer,
        node_url=env.get("APTOS_NODE_URL", ""),
        private_key_file=key_file,
        profile=profile, cli=cli,
    )
    try:
        proc = runner(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise PublishError(f"aptos move publish exceeded {timeout}s")
    except OSError as e:
        raise PublishError(f"Could not run {cli}: {e}")
    finally:
        if key_file:
            os.unlink(key_file)

    if proc.returncode != 0:
        raise PublishError(
            f"aptos move publish exited with {proc.returncode}",
            returncode=proc.returncode,
            output=(proc.stdout or "") + (proc.stderr or ""),
        )
    return PublishResult(package_dir, deployer, proc.stdout or "", proc.stderr or "", cmd)


def main():
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(__doc__.strip())
        return

    args = sys.argv[1:]
    package_dir = args[0]
    profile = ""
    dry_run = False
    i = 1
    while i < len(args):
        if args[i] == "--profile" and i + 1 < len(args):
            profile = args[i + 1]
            i += 2
            continue
        if args[i] == "--dry-run":
            dry_run = True
        else:
            print(f"Unknown argument: {args[i]}", file=sys.stderr)
            sys.exit(2)
        i += 1

    try:
        if dry_run:
            deployer = resolve_deployer(os.environ)
            print(" ".join(build_command(package_dir, deployer, profile=profile)))
            return
        result = publish(package_dir, profile=profile)
    except PublishError as e:
        print(f"publish failed: {e}", file=sys.stderr)
        if e.output:
            print(e.output, file=sys.stderr)
        sys.exit(1)

    print(f"Published {result.package_dir} as {result.deployer}")
    print(result.stdout)


if __name__ == "__main__":
    main()
