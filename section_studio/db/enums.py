from enum import Enum


class RegenerationModeEnum(str, Enum):
    upscale = "upscale"
    restyle = "restyle"
    boundary_repair = "boundary_repair"
    restore = "restore"


class ImageFieldEnum(str, Enum):
    primary = "primary"
    mobile = "mobile"


class ImageSourceKindEnum(str, Enum):
    upload = "upload"
    upscale = "upscale"
    upscale_fallback = "upscale_fallback"
    restyle = "restyle"
    restyle_fallback = "restyle_fallback"
    boundary_repair = "boundary_repair"
    boundary_repair_fallback = "boundary_repair_fallback"
    restore = "restore"
    restore_fallback = "restore_fallback"


class HistoryActionEnum(str, Enum):
    upscale = "upscale"
    restyle = "restyle"
    boundary_repair = "boundary_repair"
    restore = "restore"
    revert = "revert"


class GenerationRunStatusEnum(str, Enum):
    succeeded = "succeeded"
    fallback = "fallback"
    failed = "failed"
