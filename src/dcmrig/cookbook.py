import logging
from dataclasses import dataclass, field
from pathlib import Path

import toml

from dcmrig.tags import ALL_VRS, BINARY_VRS, PATIENT_ID, TagReference, parse_tags

logger = logging.getLogger(__name__)

COOKBOOK_DIR = ".dcmrig"
COOKBOOK_FILE = "cookbook.toml"

DEFAULT_COOKBOOK = """# The chain of application is mask > add > delete
# The tags are case sensitive and should be keywords from the DICOM standard dictionary
# Mask and delete only work with the tags already present in the dicom file

# Unique ID to match on, PatientID and PatientName tags suggested. It will default to PatientID
[matchid]
tag = "PatientID"

# List of tags that will be masked by the DeID. Add vrs = ["PN"] to only mask
# tags with those value representations
[mask]
tags = ["PatientID", "PatientName"]

# List of tags that will be deleted. Set private_tags = true to strip all
# private tags as well
[delete]
tags = ["PatientBirthDate", "PatientAddress", "PatientTelephoneNumbers", "PatientComments"]
private_tags = false

# Dictionary of tags to be added along with their values. Values can use
# {Keyword} placeholders which are filled from the masked file, eg
# tags.ClinicalTrialTimePointID = "{PatientID}_{StudyDate}T{StudyTime}_{Modality}"
[add]
tags.PatientIdentityRemoved = "YES"
tags.DeidentificationMethod = "DCMRig"
"""


class ConfigError(Exception):
    pass


@dataclass
class MaskConfig:
    tags: list = field(default_factory=list)
    vrs: list = field(default_factory=list)


@dataclass
class DeleteConfig:
    tags: list = field(default_factory=list)
    private_tags: bool = False


@dataclass
class AddConfig:
    tags: dict = field(default_factory=dict)


@dataclass
class TransformConfig:
    """
    The mask / add / delete chain. The order the sections appear in the
    cookbook doesn't matter: the chain is always applied as
    mask > add > delete.
    """

    match_tag: TagReference = PATIENT_ID
    mask: MaskConfig = field(default_factory=MaskConfig)
    delete: DeleteConfig = field(default_factory=DeleteConfig)
    add: AddConfig = field(default_factory=AddConfig)

    @property
    def is_empty(self):
        return not (
            self.mask.tags or self.add.tags or self.delete.tags or self.delete.private_tags
        )


def default_cookbook_path():
    return Path.home() / COOKBOOK_DIR / COOKBOOK_FILE


def ensure_cookbook(path):
    """
    Write the default cookbook to path if there isn't a file there already.
    Never overwrites an existing cookbook. Returns True if a new file was
    written.
    ---
    path: pathlib.Path

    raises: OSError if the directory or file can't be created
    """
    if path.exists():
        return False
    logger.warning(f"Cookbook not found, creating a default cookbook at {path}")
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(path, "x") as fh:
            fh.write(DEFAULT_COOKBOOK)
    except FileExistsError:
        return False
    return True


def load_cookbook(path):
    """
    Read and parse a cookbook file.
    ---
    path: pathlib.Path

    returns: TransformConfig

    raises: ConfigError if the file can't be read or parsed
    """
    try:
        with open(path, "r") as fh:
            raw = toml.load(fh)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Couldn't read cookbook {path}: {e}")
    logger.info(f"Reading from the cookbook at {path}")
    return parse_cookbook(raw)


def _section(raw, name):
    section = raw.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _string_list(section, name, key):
    values = section.get(key, [])
    if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
        raise ConfigError(f"[{name}] {key} must be a list of strings")
    return values


def parse_cookbook(raw):
    """
    Build a TransformConfig from a parsed cookbook. Invalid tag names are
    dropped with a warning, structural problems raise ConfigError.
    ---
    raw: dict as returned by toml.load

    returns: TransformConfig
    """
    config = TransformConfig()

    matchid = _section(raw, "matchid")
    if "tag" in matchid:
        if not isinstance(matchid["tag"], str):
            raise ConfigError("[matchid] tag must be a string")
        try:
            config.match_tag = TagReference.parse(matchid["tag"])
        except ValueError:
            logger.warning(
                f"[matchid] tag {matchid['tag']} is not valid, using PatientID"
            )

    mask = _section(raw, "mask")
    config.mask.tags = parse_tags(_string_list(mask, "mask", "tags"), "mask")
    for vr in _string_list(mask, "mask", "vrs"):
        if vr.upper() in ALL_VRS:
            config.mask.vrs.append(vr.upper())
        else:
            logger.warning(f"[mask] VR {vr} is not valid")

    delete = _section(raw, "delete")
    config.delete.tags = parse_tags(_string_list(delete, "delete", "tags"), "delete")
    private_tags = delete.get("private_tags", False)
    if not isinstance(private_tags, bool):
        raise ConfigError("[delete] private_tags must be true or false")
    config.delete.private_tags = private_tags

    add = _section(raw, "add")
    add_tags = add.get("tags", {})
    if not isinstance(add_tags, dict):
        raise ConfigError("[add] tags must be a table of tag = value")
    for name, value in add_tags.items():
        try:
            ref = TagReference.parse(name)
        except ValueError:
            logger.warning(f"[add] tag {name} is not valid")
            continue
        if ref.vr in BINARY_VRS:
            logger.warning(f"[add] tag {name} has VR {ref.vr}, can't add a value")
            continue
        config.add.tags[ref] = str(value)

    for label, empty in [
        ("mask", not config.mask.tags),
        ("delete", not (config.delete.tags or config.delete.private_tags)),
        ("add", not config.add.tags),
    ]:
        if empty:
            logger.warning(f"The {label} config is empty or corrupted")
        else:
            logger.info(f"Tags to {label}: {_describe(config, label)}")
    return config


def _describe(config, label):
    if label == "mask":
        return ", ".join(str(t) for t in config.mask.tags)
    if label == "delete":
        names = [str(t) for t in config.delete.tags]
        if config.delete.private_tags:
            names.append("<private tags>")
        return ", ".join(names)
    return ", ".join(f"{t}={v}" for t, v in config.add.tags.items())


class StaticCookbook:
    """A cookbook which is already in memory"""

    def __init__(self, config=None):
        self.config = config if config is not None else TransformConfig()

    def load(self):
        return self.config


class FileCookbook:
    """
    A cookbook on disk. Loading it creates the default cookbook if there is
    no file at path, and falls back to an empty chain, under which no tag
    transformation occurs, if the file is broken.
    """

    def __init__(self, path=None):
        self.path = path if path is not None else default_cookbook_path()

    def load(self):
        ensure_cookbook(self.path)
        try:
            config = load_cookbook(self.path)
        except ConfigError as e:
            logger.error(f"{e} - no tag transformation will occur")
            return TransformConfig()
        if config.is_empty:
            logger.warning(
                f"Cookbook {self.path} is empty - no tag transformation will occur"
            )
        return config
