from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Paths:
    mount_root: str = "/mnt"
    config_checkout: str = "/tmp/nix-config"
    log_dir: str = "/tmp"
    esp_backup_dir: str = "/tmp"
    hardware_config_rel: str = "etc/nixos/hardware-configuration.nix"
    nixos_marker: str = "/etc/NIXOS"
    efivars: str = "/sys/firmware/efi/efivars"


PATHS = Paths()

REPO_URL_DEFAULT = "https://github.com/ex1tium/nix-configurations.git"
BRANCH_DEFAULT = "main"

LUKS_MAPPING = "cryptroot"
FS_LABEL = "nixos"
ESP_LABEL = "boot"
ESP_SIZE = "512MiB"
ERASE_TOKEN = "ERASE"

ESP_PARTTYPE = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"

GIB = 1024 ** 3
# sgdisk moves partition starts up to this boundary
PARTITION_ALIGN_BYTES = 1024 ** 2
MIN_DUAL_BOOT_BYTES = 20 * GIB


def default_log_path(now: datetime | None = None) -> str:
    ts = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{PATHS.log_dir}/nixos-install-{ts}.log"
