"""
WimForge Driver Categorizer
Sorts driver packages into boot-critical storage drivers and general drivers
and copies them into the installation media tree
"""

import codecs
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional, Set, Union

import yaml


logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

MAX_NAME_ATTEMPTS = 100


@dataclass(frozen=True)
class DriverClassificationPolicy:
    """Heuristics that mark a driver package as storage (needed during setup)"""
    storage_keywords: FrozenSet[str]
    storage_classes: FrozenSet[str]

    @classmethod
    def create(cls, keywords: Iterable[str], classes: Iterable[str]) -> "DriverClassificationPolicy":
        return cls(
            storage_keywords=frozenset(k.lower() for k in keywords),
            storage_classes=frozenset(c.lower() for c in classes),
        )

    def matches_file_name(self, file_name: str) -> bool:
        name = file_name.lower()
        return any(keyword in name for keyword in self.storage_keywords)

    def matches_class(self, class_name: str) -> bool:
        return class_name.lower() in self.storage_classes


DEFAULT_DRIVER_POLICY = DriverClassificationPolicy.create(
    keywords=["iaahci", "iastor", "iastorac", "iastora", "iastorv", "vmd", "irst", "rst"],
    classes=["SCSIAdapter", "hdc"],
)


def load_driver_policy(path: PathLike) -> DriverClassificationPolicy:
    """
    Load a classification policy from YAML.

    Expected keys: storage_keywords and storage_classes (lists of strings).
    A missing key keeps the default list for that key.
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Driver policy must be a mapping: {path}")

    keywords = data.get('storage_keywords', sorted(DEFAULT_DRIVER_POLICY.storage_keywords))
    classes = data.get('storage_classes', sorted(DEFAULT_DRIVER_POLICY.storage_classes))
    policy = DriverClassificationPolicy.create(keywords, classes)
    logger.debug(f"Loaded driver policy from {path}: "
                 f"{len(policy.storage_keywords)} keywords, {len(policy.storage_classes)} classes")
    return policy


def _read_inf_text(inf_path: Path) -> str:
    raw = inf_path.read_bytes()
    if raw.startswith(codecs.BOM_UTF16_LE) or raw.startswith(codecs.BOM_UTF16_BE):
        return raw.decode('utf-16')
    try:
        return raw.decode('utf-8-sig')
    except UnicodeDecodeError:
        return raw.decode('utf-16')


def _declared_class(text: str) -> Optional[str]:
    for line in text.splitlines():
        key, sep, value = line.partition('=')
        if not sep or key.strip().lower() != 'class':
            continue
        value = value.split(';', 1)[0].strip().strip('"')
        if value:
            return value
    return None


def is_storage_driver(inf_path: PathLike,
                      policy: DriverClassificationPolicy = DEFAULT_DRIVER_POLICY) -> bool:
    """Decide whether an .inf descriptor belongs to a storage controller driver"""
    inf_path = Path(inf_path)
    try:
        if policy.matches_file_name(inf_path.name):
            logger.info(f"Storage driver detected (filename): {inf_path.name}")
            return True

        class_name = _declared_class(_read_inf_text(inf_path))
        if class_name and policy.matches_class(class_name):
            logger.info(f"Storage driver detected (class={class_name}): {inf_path.name}")
            return True

        return False
    except Exception as e:
        logger.warning(f"Could not categorize driver {inf_path.name}: {e}")
        return False


def _find_inf_files(source_dir: Path) -> List[Path]:
    return sorted(
        (p for p in source_dir.rglob('*') if p.is_file() and p.suffix.lower() == '.inf'),
        key=lambda p: str(p).lower()
    )


def _is_under(path: Path, directory: Path) -> bool:
    prefix = [part.lower() for part in directory.absolute().parts]
    return [part.lower() for part in path.absolute().parts[:len(prefix)]] == prefix


def _free_destination(root: Path, leaf: str) -> Optional[Path]:
    candidate = root / leaf
    if not candidate.exists():
        return candidate
    for counter in range(1, MAX_NAME_ATTEMPTS):
        candidate = root / f"{leaf}_{counter}"
        if not candidate.exists():
            return candidate
    return None


def categorize_and_copy_drivers(source_dir: PathLike, storage_root: PathLike, general_root: PathLike,
                                exclude_dir: Optional[PathLike] = None,
                                policy: DriverClassificationPolicy = DEFAULT_DRIVER_POLICY) -> int:
    """
    Copy every driver package below source_dir into storage_root or general_root.

    A package is the folder holding an .inf file; each folder is copied once
    (flat, files only) into <root>/<folder name>, with _1, _2 ... suffixes on
    name collisions. Returns the number of packages copied.
    """
    source_dir = Path(source_dir)
    storage_root = Path(storage_root)
    general_root = Path(general_root)

    inf_files = _find_inf_files(source_dir)
    if not inf_files:
        logger.warning(f"No .inf files found in: {source_dir}")
        return 0

    if exclude_dir:
        excluded = Path(exclude_dir)
        kept = [inf for inf in inf_files if not _is_under(inf, excluded)]
        if len(kept) != len(inf_files):
            logger.info(f"Excluded {len(inf_files) - len(kept)} driver(s) from working directory")
        inf_files = kept

    if not inf_files:
        logger.warning("No valid drivers found after filtering")
        return 0

    logger.info(f"Found {len(inf_files)} driver descriptor(s) to categorize")

    copied = 0
    visited: Set[str] = set()
    for inf_file in inf_files:
        package_dir = inf_file.parent
        key = str(package_dir).lower()
        if key in visited:
            continue
        visited.add(key)

        try:
            target_root = storage_root if is_storage_driver(inf_file, policy) else general_root
            destination = _free_destination(target_root, package_dir.name)
            if destination is None:
                logger.error(f"No free destination name for driver {package_dir.name} in {target_root}")
                continue

            destination.mkdir(parents=True, exist_ok=True)
            for item in package_dir.iterdir():
                if item.is_file():
                    shutil.copy2(item, destination / item.name)

            copied += 1
            logger.info(f"Copied driver: {package_dir.name} -> {destination}")
        except Exception as e:
            logger.error(f"Failed to copy driver {inf_file.name}: {e}")

    return copied

