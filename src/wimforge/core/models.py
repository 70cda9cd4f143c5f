"""
WimForge Data Models
Core data structures shared by the image customization and ISO build pipeline
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Tuple


class ImageFormat(Enum):
    """Installable image container formats found under sources/"""
    WIM = "wim"                      # Standard Windows Imaging Format
    ESD = "esd"                      # Compressed/encrypted Electronic Software Delivery

    @property
    def file_name(self) -> str:
        return f"install.{self.value}"

    @property
    def display_name(self) -> str:
        return self.value.upper()


class FormatConflictPolicy(Enum):
    """What to do when install.wim and install.esd are both present"""
    ABORT = "abort"                  # Stop the pipeline and report
    PREFER_WIM = "prefer_wim"        # Delete install.esd, keep install.wim
    PREFER_ESD = "prefer_esd"        # Delete install.wim, keep install.esd
    KEEP_BOTH = "keep_both"          # Proceed with both on disk


class PipelineStage(Enum):
    """Stages of one orchestrated ISO rebuild"""
    VALIDATE = "validate"
    DETECT = "detect"
    RESOLVE = "resolve"
    CUSTOMIZE = "customize"
    ENSURE_TOOL = "ensure_tool"
    BUILD = "build"
    CLEANUP = "cleanup"


@dataclass(frozen=True)
class ImageFormatInfo:
    """Metadata for one install image container"""
    format: ImageFormat
    image_count: int
    edition_names: Tuple[str, ...]
    size_bytes: int
    file_path: str = ""

    @property
    def size_gb(self) -> float:
        return self.size_bytes / (1024 ** 3)


@dataclass(frozen=True)
class DualFormatDetectionResult:
    """Result of probing a working tree for both container formats"""
    wim_info: Optional[ImageFormatInfo] = None
    esd_info: Optional[ImageFormatInfo] = None

    @property
    def both_exist(self) -> bool:
        return self.wim_info is not None and self.esd_info is not None

    @property
    def neither_exists(self) -> bool:
        return self.wim_info is None and self.esd_info is None

    @property
    def exactly_one_exists(self) -> bool:
        return (self.wim_info is None) != (self.esd_info is None)

    @property
    def single(self) -> Optional[ImageFormatInfo]:
        """The only detected image, or None when zero or two were found"""
        if not self.exactly_one_exists:
            return None
        return self.wim_info or self.esd_info


@dataclass(frozen=True)
class ToolLocation:
    """Resolved location of an external tool binary"""
    path: str = ""
    is_available: bool = False

    @classmethod
    def missing(cls) -> "ToolLocation":
        return cls("", False)

    @classmethod
    def found(cls, path: str) -> "ToolLocation":
        return cls(path, True)


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of an external process invocation"""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        if self.stderr:
            return f"{self.stdout}\n{self.stderr}" if self.stdout else self.stderr
        return self.stdout


@dataclass(frozen=True)
class ProgressDetail:
    """Progress update streamed from a long-running tool"""
    status_text: str = ""
    terminal_output: str = ""
    percent: Optional[float] = None


@dataclass(frozen=True)
class PipelineResult:
    """Final outcome of one pipeline run"""
    success: bool
    failed_stage: Optional[PipelineStage] = None
    message: str = ""
    output_path: Optional[str] = None
    image_info: Optional[ImageFormatInfo] = None
    completed_stages: Tuple[PipelineStage, ...] = field(default_factory=tuple)
