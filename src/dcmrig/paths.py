import re
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

SORT_KEYS = {"I": "PatientID", "N": "PatientName", "M": "Modality"}
DEFAULT_SORT_ORDER = ["PatientID"]

NON_DICOM_DIR = "NON_DICOM"
FAILED_DIR = "FAILED_CASES"

# prefixes for output filenames
FILENAME_PREFIX = {"anon": "ANON", "deid": "DeID"}

NON_ALPHANUMERIC_RE = re.compile(r"[^a-zA-Z0-9]+")
UNSAFE_RE = re.compile(r"[\s/\\^]+")


def parse_sort_order(order):
    """
    Convert a sort order like "NIM" into a list of tag keywords. Letters
    are case-insensitive: I = PatientID, N = PatientName, M = Modality.
    Other letters are ignored and repeats are dropped. If nothing valid is
    left, sorts by PatientID.
    ---
    order: str

    returns: list of str
    """
    keywords = []
    for letter in order.upper():
        if letter not in SORT_KEYS:
            logger.warning(f"Ignoring unknown sort order letter {letter}")
            continue
        if SORT_KEYS[letter] not in keywords:
            keywords.append(SORT_KEYS[letter])
    if not keywords:
        logger.warning("Valid sort order not found, PatientID will be used")
        return list(DEFAULT_SORT_ORDER)
    return keywords


def clean(value):
    """Replace runs of non-alphanumeric characters with '_'"""
    return NON_ALPHANUMERIC_RE.sub("_", value.strip())


def safe(value):
    """Make a value safe to use as a single path component"""
    value = UNSAFE_RE.sub("_", value.strip())
    if value in [".", ".."]:
        return "_"
    return value


def _study_time(values):
    return values["StudyTime"].split(".")[0]


def dicom_filename(values, prefix, patient_id=None):
    """
    Build a filename from sanitised tag values, like

    DeID_DeID001_CT_20200312T101500_3_1.2.3.4_00001.dcm

    patient_id replaces the PatientID value when it's given, so that deid
    and anon filenames are always built from the new identifier.
    ---
    values: dict as returned by dicoms.sanitized_values
    prefix: str
    patient_id: str or None

    returns: str
    """
    if patient_id is None:
        patient_id = values["PatientID"]
    name = "_".join(
        [
            prefix,
            patient_id,
            values["Modality"],
            f"{values['StudyDate']}T{_study_time(values)}",
            values["SeriesNumber"],
            values["SeriesInstanceUID"],
            f"{values['InstanceNumber']:0>5}",
        ]
    )
    return safe(name) + ".dcm"


def sort_dir(values, order):
    """
    Relative directory for a sorted file: one level for each sort order
    tag, then the study and the series.
    ---
    values: dict as returned by dicoms.sanitized_values
    order: list of tag keywords from parse_sort_order

    returns: pathlib.Path
    """
    levels = [clean(values[keyword]) for keyword in order]
    study_uid = values["StudyInstanceUID"].split(".")[-1]
    levels.append(safe(f"{values['StudyDate']}T{_study_time(values)}_{study_uid}"))
    series = clean(values["SeriesDescription"])
    levels.append(safe(f"{values['SeriesNumber']:0>4}_{series}"))
    return Path(*levels)


def tags_dir(values, identifier):
    """
    Relative directory for a deid or anon file when renaming: identifier,
    then study, then series and image plane.
    """
    study_uid = values["StudyInstanceUID"].split(".")[-1][-5:]
    series = clean(values["SeriesDescription"]).upper()
    return Path(
        safe(identifier),
        safe(f"{values['StudyDate']}T{_study_time(values)}_{study_uid:0>5}"),
        safe(f"{values['SeriesNumber']:0>4}_{series}_{values['ImagePlane']}"),
    )


def mirror_dir(source_root, file):
    """Relative directory of file under source_root"""
    return file.parent.relative_to(source_root)


def plan_sort(values, order, destination):
    """Destination directory and filename for sort mode"""
    prefix = clean(values["PatientName"])
    return destination / sort_dir(values, order), dicom_filename(values, prefix)


def plan_output(values, identifier, mode, destination, relative_dir=None):
    """
    Destination directory and filename for anon or deid mode. The file goes
    under relative_dir if it's given (mirroring the source tree), otherwise
    in a directory built from the identifier and tags.
    ---
    values: dict as returned by dicoms.sanitized_values, post-transform
    identifier: str
    mode: "anon" or "deid"
    destination: pathlib.Path
    relative_dir: pathlib.Path or None

    returns: ( pathlib.Path, str )
    """
    filename = dicom_filename(values, FILENAME_PREFIX[mode], identifier)
    if relative_dir is None:
        relative_dir = tags_dir(values, identifier)
    return destination / relative_dir, filename


def reserve_path(directory, filename):
    """
    Create directory if needed and claim a new, empty file in it named
    filename. If that's taken, tries name.1.dcm, name.2.dcm and so on. The
    file is created exclusively, so two workers can never be given the same
    path and nothing is ever overwritten.
    ---
    directory: pathlib.Path
    filename: str

    returns: pathlib.Path
    """
    directory.mkdir(parents=True, exist_ok=True)
    base = Path(filename)
    path = directory / filename
    n = 0
    while True:
        try:
            with open(path, "xb"):
                pass
            return path
        except FileExistsError:
            n += 1
            path = directory / f"{base.stem}.{n}{base.suffix}"
