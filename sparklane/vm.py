"""Preparation and launch of micro-VMs that run uploaded projects."""

from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import shutil
import subprocess
import time
import zipfile
from dataclasses import asdict, dataclass, field
from pathlib import Path

from sparklane.store import DatabaseError, Db

logger = logging.getLogger(__name__)

BASE_IMAGE_PATH = Path("/mnt/sparklane/base.img")
IMAGE_DIR = Path("/mnt/vm-images")
MOUNT_ROOT = Path("/mnt")
RUNTIME_DIR = Path("/tmp")
KERNEL_IMAGE_PATH = "/mnt/vmlinux"
BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off root=/dev/vda init=/sbin/init"

_MASK64 = (1 << 64) - 1


class SpinError(OSError):
    """Raised when a VM cannot be prepared or started."""


@dataclass
class Config:
    """Everything needed to build and run one deployed project."""

    id: str
    sub: str
    port: int = 8080
    build_commands: list[str] = field(default_factory=list)
    run_command: str = ""

    def to_json(self) -> str:
        """Serialise to compact JSON with fields in declaration order."""
        return json.dumps(asdict(self), separators=(",", ":"))


def extract_zip(data: bytes) -> list[tuple[str, bytes]]:
    """Return (name, contents) for every file entry of a zip archive, in order."""
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return [
            (info.filename, archive.read(info))
            for info in archive.infolist()
            if not info.is_dir()
        ]


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (64 - bits))) & _MASK64


def _siphash13(data: bytes, k0: int = 0, k1: int = 0) -> int:
    v0 = k0 ^ 0x736F6D6570736575
    v1 = k1 ^ 0x646F72616E646F6D
    v2 = k0 ^ 0x6C7967656E657261
    v3 = k1 ^ 0x7465646279746573

    def sip_round(v0, v1, v2, v3):
        v0 = (v0 + v1) & _MASK64
        v1 = _rotl(v1, 13) ^ v0
        v0 = _rotl(v0, 32)
        v2 = (v2 + v3) & _MASK64
        v3 = _rotl(v3, 16) ^ v2
        v0 = (v0 + v3) & _MASK64
        v3 = _rotl(v3, 21) ^ v0
        v2 = (v2 + v1) & _MASK64
        v1 = _rotl(v1, 17) ^ v2
        v2 = _rotl(v2, 32)
        return v0, v1, v2, v3

    whole = len(data) - len(data) % 8
    for start in range(0, whole, 8):
        word = int.from_bytes(data[start:start + 8], "little")
        v3 ^= word
        v0, v1, v2, v3 = sip_round(v0, v1, v2, v3)
        v0 ^= word

    last = ((len(data) & 0xFF) << 56) | int.from_bytes(data[whole:], "little")
    v3 ^= last
    v0, v1, v2, v3 = sip_round(v0, v1, v2, v3)
    v0 ^= last
    v2 ^= 0xFF
    for _ in range(3):
        v0, v1, v2, v3 = sip_round(v0, v1, v2, v3)
    return v0 ^ v1 ^ v2 ^ v3


def generate_mac(identifier: str) -> str:
    """Derive a stable locally-administered MAC address from an identifier."""
    digest = _siphash13(identifier.encode() + b"\xff")
    octets = [(digest >> shift) & 0xFF for shift in (24, 16, 8, 0)]
    return "AA:FC:" + ":".join(f"{octet:02X}" for octet in octets)


def _short_id(identifier: str) -> str:
    if len(identifier) < 8:
        raise ValueError(f"instance id {identifier!r} is shorter than 8 characters")
    return identifier[:8]


def _tap_name(identifier: str) -> str:
    return f"tap{_short_id(identifier)}"


def _mount_dir(identifier: str) -> Path:
    return MOUNT_ROOT / f"vm-usercode-{identifier}"


def render_init_script(config: Config) -> str:
    """Return the guest init script that builds and runs the project."""
    build = "\n".join(config.build_commands)
    return f"#!/bin/bash\ncd /app\n{build}\n{config.run_command}\npoweroff -f"


def render_vm_config(config: Config, image_path) -> str:
    """Return the hypervisor configuration document for the instance."""
    document = {
        "boot-source": {
            "kernel_image_path": KERNEL_IMAGE_PATH,
            "boot_args": BOOT_ARGS,
        },
        "drives": [
            {
                "drive_id": "rootfs",
                "path_on_host": os.fspath(image_path),
                "is_root_device": True,
                "is_read_only": False,
            }
        ],
        "network-interfaces": [
            {
                "iface_id": "eth0",
                "host_dev_name": _tap_name(config.id),
                "guest_mac": generate_mac(config.id),
            }
        ],
        "console-cfg": {
            "file": os.fspath(RUNTIME_DIR / f"firecracker-{config.id}.log"),
        },
    }
    return json.dumps(document, indent=2)


def ensure_tap_device(tap_name: str) -> None:
    """Recreate the named TAP device and bring it up."""
    try:
        subprocess.run(["ip", "link", "del", tap_name], capture_output=True, check=False)
    except OSError:
        pass
    time.sleep(0.1)

    created = subprocess.run(["ip", "tuntap", "add", "mode", "tap", tap_name], check=False)
    if created.returncode != 0:
        raise SpinError(f"Failed to create TAP device {tap_name}")

    raised = subprocess.run(["ip", "link", "set", tap_name, "up"], check=False)
    if raised.returncode != 0:
        raise SpinError(f"Failed to bring up TAP device {tap_name}")


def _prepare_image(image_path: Path, mount_dir: Path, app_dir: Path) -> None:
    image_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(BASE_IMAGE_PATH, image_path)
    mount_dir.mkdir(parents=True, exist_ok=True)
    subprocess.run(
        ["mount", "-o", "loop", os.fspath(image_path), os.fspath(mount_dir)],
        check=False,
    )
    app_dir.mkdir(parents=True, exist_ok=True)


def _install(
    config: Config,
    files: list[tuple[str, bytes]],
    image_path: Path,
    mount_dir: Path,
    app_dir: Path,
) -> Path:
    for name, contents in files:
        target = app_dir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(contents)

    config_path = RUNTIME_DIR / f"vm-{config.id}.json"
    config_path.write_text(render_vm_config(config, image_path))

    init_path = mount_dir / "init.sh"
    init_path.write_text(render_init_script(config))
    init_path.chmod(0o755)

    link = mount_dir / "init"
    if os.path.lexists(link):
        link.unlink()
    link.symlink_to("init.sh")

    ensure_tap_device(_tap_name(config.id))

    try:
        (RUNTIME_DIR / f"firecracker-{config.id}.sock").unlink()
    except OSError:
        pass
    return config_path


def _run_firecracker(config: Config, config_path: Path) -> int:
    socket_path = RUNTIME_DIR / f"firecracker-{config.id}.sock"
    completed = subprocess.run(
        [
            "firecracker",
            "--api-sock",
            os.fspath(socket_path),
            "--config-file",
            os.fspath(config_path),
        ],
        check=False,
    )
    return completed.returncode


async def spin(config: Config, files: list[tuple[str, bytes]], db: Db) -> None:
    """Build a VM image holding ``files``, record the instance and boot it."""
    image_path = IMAGE_DIR / f"{config.id}.img"
    mount_dir = _mount_dir(config.id)
    app_dir = mount_dir / "app"

    await asyncio.to_thread(_prepare_image, image_path, mount_dir, app_dir)

    try:
        existing = await db.get(f"vm:{config.id}")
    except DatabaseError as exc:
        logger.error("Failed to query instance %s: %s", config.id, exc)
        raise SpinError(
            f"Database operation failed while checking instance: {exc}"
        ) from exc
    if existing is not None:
        logger.error("Instance %s already exists.", config.id)
        raise SpinError(f"Instance {config.id} already exists.")

    try:
        await db.insert(f"instance:{config.id}", config.to_json().encode())
    except DatabaseError as exc:
        logger.error("Failed to insert instance record for %s: %s", config.id, exc)
        raise SpinError(
            f"Database operation failed during instance creation: {exc}"
        ) from exc

    config_path = await asyncio.to_thread(
        _install, config, files, image_path, mount_dir, app_dir
    )

    logger.info("Starting VM %s", config.id)
    returncode = await asyncio.to_thread(_run_firecracker, config, config_path)
    if returncode != 0:
        raise SpinError(f"Firecracker command failed for VM {config.id}")


def unspin(identifier: str) -> None:
    """Unmount the user-code directory of an instance."""
    subprocess.run(["umount", os.fspath(_mount_dir(identifier))], check=False)