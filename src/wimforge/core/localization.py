"""
WimForge String Table
Keyed message lookup for user-facing pipeline text
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

import yaml


DEFAULT_STRINGS: Dict[str, str] = {
    "Pipeline_Succeeded": "ISO created successfully: {0}",
    "Pipeline_Cancelled": "Operation cancelled during {0}",
    "Pipeline_Error": "Unexpected error during {0}: {1}",
    "Validate_Failed": "The selected file is not a valid Windows ISO: {0}",
    "Detect_NoImage": "No install.wim or install.esd found in {0}",
    "Resolve_BothFormats": "Both install.wim and install.esd were found; only one should exist",
    "Resolve_DeleteFailed": "Could not delete {0} while resolving duplicate image formats",
    "Customize_AnswerFileFailed": "Could not add the answer file {0} to the image",
    "Customize_DriversFailed": "No drivers were added from {0}",
    "EnsureTool_Failed": "oscdimg.exe is not available and could not be installed",
    "Build_Failed": "ISO creation failed: {0}",
    "Cleanup_Failed": "Could not remove the working directory {0}",
    "Progress_ValidatingIso": "Validating ISO file",
    "Progress_DetectingFormat": "Detecting image format",
    "Progress_AddingAnswerFile": "Adding answer file",
    "Progress_AddingDrivers": "Adding drivers",
    "Progress_CheckingTool": "Checking for oscdimg.exe",
    "Progress_CreatingBootableIso": "Creating bootable ISO",
    "Progress_CleaningUp": "Cleaning up working directory",
    "Progress_ConvertingEdition": "Converting edition {0} of {1}",
}


class StringTable:
    """Resolves message keys to formatted text"""

    def __init__(self, strings_file: Optional[Union[str, Path]] = None):
        self.logger = logging.getLogger(__name__)
        self._strings: Dict[str, str] = dict(DEFAULT_STRINGS)
        if strings_file:
            self.load(strings_file)

    def load(self, strings_file: Union[str, Path]) -> bool:
        """Overlay strings from a YAML key/template file"""
        try:
            with open(strings_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                self.logger.warning(f"String table is not a mapping: {strings_file}")
                return False
            self._strings.update({str(k): str(v) for k, v in data.items()})
            self.logger.debug(f"Loaded {len(data)} strings from {strings_file}")
            return True
        except Exception as e:
            self.logger.warning(f"Could not load string table {strings_file}: {e}")
            return False

    def get(self, key: str, *args) -> str:
        template = self._strings.get(key)
        if template is None:
            return key
        if not args:
            return template
        try:
            return template.format(*args)
        except (IndexError, KeyError, ValueError):
            return template
