from .context import StepContext
from .step_10_detect_hardware import DetectHardwareStep
from .step_20_dynamic_optimization import DynamicOptimizationStep
from .step_30_hardware_snapshot import HardwareSnapshotStep
from .step_40_user_monitor import UserMonitorStep
from .step_50_disaster_recovery import DisasterRecoveryStep

__all__ = [
    "StepContext",
    "DetectHardwareStep",
    "DynamicOptimizationStep",
    "HardwareSnapshotStep",
    "UserMonitorStep",
    "DisasterRecoveryStep",
]
