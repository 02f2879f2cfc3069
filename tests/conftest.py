import pytest
from pydicom.dataset import FileDataset, FileMetaDataset
from pydicom.uid import ExplicitVRLittleEndian, generate_uid

from dcmrig.cookbook import parse_cookbook

from utils import SERIES_UID, STUDY_UID

CT_IMAGE_STORAGE = "1.2.840.10008.5.1.4.1.1.2"

DICOM_VALUES = {
    "PatientID": "U1423571",
    "PatientName": "DOE^JOHN",
    "PatientBirthDate": "19700101",
    "PatientComments": "Referred by Dr Smith",
    "InstitutionName": "Royal Hospital",
    "AccessionNumber": "A0012345",
    "Modality": "CT",
    "StudyDate": "20200312",
    "StudyTime": "101500.000",
    "StudyInstanceUID": STUDY_UID,
    "SeriesInstanceUID": SERIES_UID,
    "SeriesNumber": 3,
    "SeriesDescription": "Head CT",
    "InstanceNumber": 1,
    "ImageOrientationPatient": [1, 0, 0, 0, 1, 0],
}

PRIVATE_CREATOR = "DCMRIG TEST"


def make_dicom(path, private=True, **values):
    """
    Write a small CT header-only DICOM to path. Keyword arguments override
    DICOM_VALUES, and a value of None leaves that tag out altogether.
    """
    sop_uid = values.pop("SOPInstanceUID", generate_uid())
    file_meta = FileMetaDataset()
    file_meta.MediaStorageSOPClassUID = CT_IMAGE_STORAGE
    file_meta.MediaStorageSOPInstanceUID = sop_uid
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian
    ds = FileDataset(str(path), {}, file_meta=file_meta, preamble=b"\0" * 128)
    ds.SOPClassUID = CT_IMAGE_STORAGE
    ds.SOPInstanceUID = sop_uid
    fields = dict(DICOM_VALUES)
    fields.update(values)
    for keyword, value in fields.items():
        if value is not None:
            setattr(ds, keyword, value)
    if private:
        block = ds.private_block(0x0009, PRIVATE_CREATOR, create=True)
        block.add_new(0x01, "LO", "site secret")
    path.parent.mkdir(parents=True, exist_ok=True)
    ds.save_as(str(path))
    return path


@pytest.fixture
def dicom_factory(tmp_path):
    """Returns a function which writes DICOMs under tmp_path / source"""
    source = tmp_path / "source"
    source.mkdir()

    def factory(relpath, **values):
        return make_dicom(source / relpath, **values)

    factory.source = source
    return factory


@pytest.fixture
def dicom_file(dicom_factory):
    return dicom_factory("DOE^JOHN-U1423571/20200312/Head CT/image-00001.dcm")


@pytest.fixture
def destination(tmp_path):
    return tmp_path / "destination"


@pytest.fixture
def cookbook_toml():
    return """
[matchid]
tag = "PatientID"

[mask]
tags = ["PatientID", "PatientName"]

[delete]
tags = ["PatientComments", "PatientBirthDate"]
private_tags = true

[add]
tags.PatientIdentityRemoved = "YES"
tags.DeidentificationMethod = "DCMRig"
tags.ClinicalTrialTimePointID = "{PatientID}_{StudyDate}T{StudyTime}_{Modality}"
"""


@pytest.fixture
def cookbook_file(tmp_path, cookbook_toml):
    path = tmp_path / "cookbook.toml"
    path.write_text(cookbook_toml)
    return path


@pytest.fixture
def deid_config():
    return parse_cookbook(
        {
            "mask": {"tags": ["PatientID"]},
            "delete": {"tags": ["PatientComments"]},
        }
    )


@pytest.fixture
def mapping_table(tmp_path):
    path = tmp_path / "mapping.csv"
    path.write_text("DeID_001,U1423571\nDeID_002,U7654321\nDeID_003,U0000000\n")
    return path

