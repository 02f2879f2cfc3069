import os
import shutil
import logging
import tempfile
from pydicom import dcmread
from pydicom.errors import InvalidDicomError
from pydicom.multival import MultiValue

from dcmrig.tags import TagReference

# Tags used to build output paths and filenames

DICOM_PARAMS = [
    "PatientID",
    "PatientName",
    "Modality",
    "StudyDate",
    "StudyTime",
    "SeriesNumber",
    "SeriesInstanceUID",
    "StudyInstanceUID",
    "InstanceNumber",
    "SeriesDescription",
]

NO_VALUE = "NoValue_{}"

logger = logging.getLogger(__name__)


class NotDicomError(Exception):
    pass


def read_dicom(file):
    """
    Parse a file as a DICOM dataset. Each call returns a new Dataset which
    belongs to the caller.

    Raises NotDicomError if the file isn't a DICOM or can't be read
    ---
    file: pathlib.Path

    returns: pydicom.FileDataset
    """
    try:
        return dcmread(file)
    except InvalidDicomError:
        raise NotDicomError("File is not a DICOM")
    except OSError as e:
        raise NotDicomError(f"File can't be read: {e}")


def tag_value(dataset, ref):
    """
    Returns the value of a tag as a stripped string, or None if the tag is
    missing or empty. Multiple values are joined with a backslash, as they
    would be in the file.
    ---
    dataset: pydicom.Dataset
    ref: TagReference

    returns: str or None
    """
    if ref.tag not in dataset:
        return None
    value = dataset[ref.tag].value
    if value is None:
        return None
    if isinstance(value, MultiValue):
        value = "\\".join(str(v) for v in value)
    value = str(value).strip()
    if not value:
        return None
    return value


def sanitized_values(dataset):
    """
    Get the values of DICOM_PARAMS for building paths, with '-' and ':'
    removed and a placeholder like 'NoValue_Modality' for anything missing.
    Also works out the image plane.
    ---
    dataset: pydicom.Dataset

    returns: { str: str }
    """
    values = {}
    for keyword in DICOM_PARAMS:
        value = tag_value(dataset, TagReference.parse(keyword))
        if value is None:
            logger.debug(f"No value for {keyword}")
            values[keyword] = NO_VALUE.format(keyword)
        else:
            values[keyword] = value.replace("-", "").replace(":", "")
    values["ImagePlane"] = image_plane(dataset)
    return values


def image_plane(dataset):
    """
    Classify the image as axial, coronal or sagittal from the
    ImageOrientationPatient direction cosines. Returns "NA" if it's missing
    or oblique.
    """
    orientation = dataset.get("ImageOrientationPatient")
    try:
        row_x, row_y, _, _, col_y, col_z = [round(float(v)) for v in orientation]
    except (TypeError, ValueError):
        return "NA"
    if row_x == 1 and col_z == -1:
        return "COR"
    if row_x == 1 and col_y == 1:
        return "AX"
    if row_y == 1 and col_z == -1:
        return "SAG"
    return "NA"


def _atomic_write(path, writer):
    """
    Calls writer with a temporary filename in path's directory and then
    moves the result onto path, so that path never holds a partial file.
    """
    fd, temp = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".part")
    os.close(fd)
    try:
        writer(temp)
        os.replace(temp, path)
    except BaseException:
        if os.path.exists(temp):
            os.unlink(temp)
        raise


def write_dicom(dataset, path):
    """Serialise a dataset to path"""
    _atomic_write(path, lambda temp: dataset.save_as(temp))


def copy_file(source, path):
    """Copy a file's bytes unchanged to path"""
    _atomic_write(path, lambda temp: shutil.copyfile(source, temp))
