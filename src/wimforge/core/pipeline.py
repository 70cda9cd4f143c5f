"""
WimForge Pipeline
Orchestrates one ISO rebuild: validate, detect, resolve, customize,
provision oscdimg, build and clean up
"""

import logging
import threading
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, List, Optional

from wimforge.core.config import Config
from wimforge.core.disk_space import DiskSpaceChecker
from wimforge.core.driver_categorizer import DEFAULT_DRIVER_POLICY, load_driver_policy
from wimforge.core.image_customizer import ImageCustomizer
from wimforge.core.image_format import ImageFormatDetector
from wimforge.core.iso_builder import IsoBuilder, estimate_iso_space
from wimforge.core.localization import StringTable
from wimforge.core.models import (
    FormatConflictPolicy, ImageFormat, ImageFormatInfo, PipelineResult, PipelineStage, ProgressDetail
)
from wimforge.core.oscdimg_provisioner import OscdimgProvisioner, default_search_paths
from wimforge.core.process_runner import ProcessExecutor
from wimforge.core.session_guard import ServicingSessionGuard
from wimforge.core.winget import WinGetInstaller


@dataclass
class PipelineRequest:
    """Inputs for one pipeline run"""
    iso_path: str
    working_dir: str
    output_path: str
    answer_file: Optional[str] = None
    driver_source: Optional[str] = None      # None exports the running system's drivers
    include_drivers: bool = False
    keep_working_dir: bool = False
    format_policy: FormatConflictPolicy = FormatConflictPolicy.ABORT
    cancel_event: Optional[threading.Event] = None
    progress: Optional[Callable[[ProgressDetail], None]] = None


class StageFailed(Exception):
    """Raised inside the pipeline to stop at the current stage"""

    def __init__(self, stage: PipelineStage, message: str):
        super().__init__(message)
        self.stage = stage
        self.message = message


class WimForgePipeline:
    """Runs the image customization stages strictly in order"""

    def __init__(self, detector: ImageFormatDetector, customizer: ImageCustomizer,
                 provisioner: OscdimgProvisioner, builder: IsoBuilder,
                 strings: Optional[StringTable] = None):
        self.logger = logging.getLogger(__name__)
        self.detector = detector
        self.customizer = customizer
        self.provisioner = provisioner
        self.builder = builder
        self.strings = strings or StringTable()

    @classmethod
    def from_config(cls, config: Config) -> "WimForgePipeline":
        """Wire the default collaborators from configuration"""
        strings = StringTable(config.get('strings_file') or None)
        executor = ProcessExecutor()
        guard = ServicingSessionGuard(executor)
        disk_checker = DiskSpaceChecker()

        policy_file = config.get('driver_policy_file')
        policy = load_driver_policy(policy_file) if policy_file else DEFAULT_DRIVER_POLICY

        search_paths = list(config.get('extra_oscdimg_paths') or []) + default_search_paths()

        return cls(
            detector=ImageFormatDetector(guard, executor, disk_checker, strings),
            customizer=ImageCustomizer(guard, policy, temp_dir=config.get_temp_dir()),
            provisioner=OscdimgProvisioner(
                WinGetInstaller(executor),
                search_paths=search_paths,
                package_id=config.get('oscdimg_package_id'),
            ),
            builder=IsoBuilder(
                executor,
                disk_checker,
                space_estimator=partial(estimate_iso_space, margin_bytes=config.get('space_margin_bytes')),
                min_iso_size_bytes=config.get('min_iso_size_bytes'),
            ),
            strings=strings,
        )

    def _report(self, request: PipelineRequest, key: str, *args):
        status = self.strings.get(key, *args)
        self.logger.info(status)
        if request.progress is not None:
            request.progress(ProgressDetail(status_text=status))

    def _check_cancel(self, request: PipelineRequest, stage: PipelineStage):
        if request.cancel_event is not None and request.cancel_event.is_set():
            raise StageFailed(stage, self.strings.get("Pipeline_Cancelled", stage.value))

    def run(self, request: PipelineRequest) -> PipelineResult:
        """Execute every stage; the first failing stage ends the run"""
        completed: List[PipelineStage] = []
        image_info: Optional[ImageFormatInfo] = None
        working_dir = Path(request.working_dir)
        stage = PipelineStage.VALIDATE

        try:
            self._check_cancel(request, stage)
            self._report(request, "Progress_ValidatingIso")
            if not self.builder.validate_iso(request.iso_path):
                raise StageFailed(stage, self.strings.get("Validate_Failed", request.iso_path))
            completed.append(stage)

            stage = PipelineStage.DETECT
            self._check_cancel(request, stage)
            self._report(request, "Progress_DetectingFormat")
            detection = self.detector.detect_all_image_formats(working_dir)
            if detection.neither_exists:
                raise StageFailed(stage, self.strings.get("Detect_NoImage", working_dir))
            completed.append(stage)

            stage = PipelineStage.RESOLVE
            self._check_cancel(request, stage)
            image_info = self._resolve(detection, request.format_policy, working_dir)
            completed.append(stage)

            stage = PipelineStage.CUSTOMIZE
            self._check_cancel(request, stage)
            self._customize(request, working_dir)
            completed.append(stage)

            stage = PipelineStage.ENSURE_TOOL
            self._check_cancel(request, stage)
            self._report(request, "Progress_CheckingTool")
            if not self.provisioner.ensure_tool_available(request.progress):
                raise StageFailed(stage, self.strings.get("EnsureTool_Failed"))
            completed.append(stage)

            stage = PipelineStage.BUILD
            self._check_cancel(request, stage)
            self._report(request, "Progress_CreatingBootableIso")
            if not self.builder.create_iso(working_dir, request.output_path, self.provisioner.get_tool_path(),
                                           request.cancel_event, request.progress):
                raise StageFailed(stage, self.strings.get("Build_Failed", request.output_path))
            completed.append(stage)

            result = PipelineResult(
                success=True,
                message=self.strings.get("Pipeline_Succeeded", request.output_path),
                output_path=str(request.output_path),
                image_info=image_info,
            )
        except StageFailed as failure:
            self.logger.error(f"Pipeline failed at {failure.stage.value}: {failure.message}")
            result = PipelineResult(
                success=False,
                failed_stage=failure.stage,
                message=failure.message,
                image_info=image_info,
            )
        except Exception as e:
            self.logger.exception(f"Unexpected error during {stage.value}")
            result = PipelineResult(
                success=False,
                failed_stage=stage,
                message=self.strings.get("Pipeline_Error", stage.value, e),
                image_info=image_info,
            )

        if not request.keep_working_dir and self._cleanup(request, working_dir):
            completed.append(PipelineStage.CLEANUP)

        return PipelineResult(
            success=result.success,
            failed_stage=result.failed_stage,
            message=result.message,
            output_path=result.output_path,
            image_info=result.image_info,
            completed_stages=tuple(completed),
        )

    def _cleanup(self, request: PipelineRequest, working_dir: Path) -> bool:
        try:
            self._report(request, "Progress_CleaningUp")
        except Exception as e:
            self.logger.warning(f"Progress callback failed during cleanup: {e}")
        try:
            if self.builder.cleanup_working_directory(working_dir):
                return True
        except Exception as e:
            self.logger.error(f"Cleanup raised: {e}")
        self.logger.warning(self.strings.get("Cleanup_Failed", working_dir))
        return False

    def _resolve(self, detection, policy: FormatConflictPolicy, working_dir: Path) -> ImageFormatInfo:
        stage = PipelineStage.RESOLVE
        if not detection.both_exist:
            return detection.single

        if policy == FormatConflictPolicy.ABORT:
            raise StageFailed(stage, self.strings.get("Resolve_BothFormats"))

        if policy == FormatConflictPolicy.KEEP_BOTH:
            self.logger.warning("Keeping both install.wim and install.esd in the image")
            return detection.wim_info

        if policy == FormatConflictPolicy.PREFER_WIM:
            drop, keep = ImageFormat.ESD, detection.wim_info
        else:
            drop, keep = ImageFormat.WIM, detection.esd_info

        if not self.detector.delete_image_file(working_dir, drop):
            raise StageFailed(stage, self.strings.get("Resolve_DeleteFailed", drop.file_name))
        self.logger.info(f"Resolved duplicate images: kept {keep.format.file_name}")
        return keep

    def _customize(self, request: PipelineRequest, working_dir: Path):
        stage = PipelineStage.CUSTOMIZE
        if request.answer_file:
            self._report(request, "Progress_AddingAnswerFile")
            if not self.customizer.inject_answer_file(request.answer_file, working_dir):
                raise StageFailed(stage, self.strings.get("Customize_AnswerFileFailed", request.answer_file))

        if request.include_drivers:
            self._report(request, "Progress_AddingDrivers")
            if not self.customizer.inject_drivers(working_dir, request.driver_source, request.progress):
                source = request.driver_source or "the running system"
                raise StageFailed(stage, self.strings.get("Customize_DriversFailed", source))
