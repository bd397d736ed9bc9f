from .step_10_environment import BootstrapDependenciesStep, ValidateEnvironmentStep
from .step_20_config import DiscoverMachinesStep, FetchConfigStep
from .step_30_select import (
    SelectDiskStep,
    SelectEncryptionStep,
    SelectFilesystemStep,
    SelectMachineStep,
    SelectModeStep,
)
from .step_40_cleanup import CleanupStep
from .step_50_partition import PartitionStep
from .step_55_filesystem import FilesystemStep
from .step_60_user import UserResolutionStep
from .step_65_build import BuildValidateStep
from .step_70_hardware_config import HardwareConfigStep
from .step_80_install import InstallStep
from .step_90_post_validate import PostValidateStep

__all__ = [
    "ValidateEnvironmentStep",
    "BootstrapDependenciesStep",
    "FetchConfigStep",
    "DiscoverMachinesStep",
    "SelectModeStep",
    "SelectMachineStep",
    "SelectFilesystemStep",
    "SelectEncryptionStep",
    "SelectDiskStep",
    "CleanupStep",
    "PartitionStep",
    "FilesystemStep",
    "UserResolutionStep",
    "BuildValidateStep",
    "HardwareConfigStep",
    "InstallStep",
    "PostValidateStep",
]
