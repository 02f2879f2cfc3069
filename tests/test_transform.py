import uuid

import pytest

from dcmrig.cookbook import (
    AddConfig,
    DeleteConfig,
    MaskConfig,
    TransformConfig,
    parse_cookbook,
    load_cookbook,
)
from dcmrig.dicoms import read_dicom
from dcmrig.identity import AnonymousRegistry, MappingRegistry, UnmappedIdentity
from dcmrig.tags import TagReference
from dcmrig.transform import (
    MissingMatchTag,
    TransformError,
    add_phase,
    anonymize,
    apply,
    apply_chain,
    delete_phase,
    deidentify,
    fit_to_vr,
    mask_phase,
    person_name_tags,
    render_template,
)

from utils import SERIES_UID, STUDY_UID, assert_datasets_equal


def refs(*keywords):
    return [TagReference.parse(k) for k in keywords]


def has_private(dataset):
    return any(element.tag.is_private for element in dataset)


@pytest.fixture
def dataset(dicom_file):
    return read_dicom(dicom_file)


def test_fit_to_vr():
    assert fit_to_vr("DeID_001", "LO") == "DeID_001"
    assert fit_to_vr("deid-001", "CS") == "DEID_001"
    assert fit_to_vr("x" * 100, "LO") == "x" * 64
    assert fit_to_vr("x" * 100, "SH") == "x" * 16
    assert fit_to_vr("x" * 100, "LT") == "x" * 100


def test_render_template(dataset):
    assert render_template("{PatientID}_{Modality}", dataset) == "U1423571_CT"
    assert render_template("{NotATag}-{StationName}", dataset) == "-"
    assert render_template("fixed", dataset) == "fixed"


def test_mask_phase(dataset):
    mask = MaskConfig(tags=refs("PatientID", "PatientName", "StationName", "StudyDate"))
    mask_phase(dataset, mask, "DeID_001")
    assert dataset.PatientID == "DeID_001"
    assert str(dataset.PatientName) == "DeID_001"
    # absent tags aren't created and dates can't hold an identifier
    assert "StationName" not in dataset
    assert dataset.StudyDate == "20200312"


def test_mask_phase_vrs(dataset):
    mask = MaskConfig(tags=refs("PatientID", "PatientName"), vrs=["PN"])
    mask_phase(dataset, mask, "DeID_001")
    assert dataset.PatientID == "U1423571"
    assert str(dataset.PatientName) == "DeID_001"


def test_add_phase(dataset):
    add = AddConfig(
        tags={
            TagReference.parse("PatientIdentityRemoved"): "YES",
            TagReference.parse("PatientID"): "NEW",
            TagReference.parse("Rows"): "512",
            TagReference.parse("ClinicalTrialTimePointID"): "{Modality}_{StudyDate}",
        }
    )
    add_phase(dataset, add)
    assert dataset.PatientIdentityRemoved == "YES"
    assert dataset.PatientID == "NEW"
    assert dataset.Rows == 512
    assert dataset.ClinicalTrialTimePointID == "CT_20200312"


def test_add_phase_bad_value(dataset):
    add = AddConfig(tags={TagReference.parse("Rows"): "lots"})
    with pytest.raises(TransformError):
        add_phase(dataset, add)


def test_delete_phase(dataset):
    delete = DeleteConfig(tags=refs("PatientComments", "StationName"))
    delete_phase(dataset, delete)
    assert "PatientComments" not in dataset
    assert has_private(dataset)
    delete_phase(dataset, delete)
    assert "PatientComments" not in dataset


def test_delete_private_tags(dataset):
    delete_phase(dataset, DeleteConfig(private_tags=True))
    assert not has_private(dataset)
    assert dataset.PatientID == "U1423571"


def test_chain_order(dataset):
    config = parse_cookbook(
        {
            "delete": {"tags": ["PatientName"]},
            "add": {"tags": {"ClinicalTrialTimePointID": "{PatientID}_{Modality}"}},
            "mask": {"tags": ["PatientID", "PatientName"]},
        }
    )
    apply_chain(dataset, config, "DeID_001")
    # mask then delete of the same tag leaves it deleted
    assert "PatientName" not in dataset
    # add sees the masked value
    assert dataset.ClinicalTrialTimePointID == "DeID_001_CT"


def test_deidentify(dicom_file, cookbook_file, mapping_table):
    dataset = read_dicom(dicom_file)
    config = load_cookbook(cookbook_file)
    registry = MappingRegistry.from_file(mapping_table)
    result, identifier = deidentify(dataset, config, registry)
    assert identifier == "DeID_001"
    assert result.PatientID == "DeID_001"
    assert str(result.PatientName) == "DeID_001"
    assert "PatientComments" not in result
    assert "PatientBirthDate" not in result
    assert not has_private(result)
    assert result.PatientIdentityRemoved == "YES"
    assert result.ClinicalTrialTimePointID == "DeID_001_20200312T101500.000_CT"
    # the input dataset is untouched
    assert dataset.PatientID == "U1423571"
    assert "PatientComments" in dataset
    assert has_private(dataset)


def test_deidentify_empty_config(dataset):
    result, _ = deidentify(dataset, TransformConfig(), AnonymousRegistry())
    assert result is not dataset
    assert_datasets_equal(dataset, result)
    assert_datasets_equal(result, dataset)


def test_deidentify_other_match_tag(dataset):
    config = parse_cookbook(
        {"matchid": {"tag": "AccessionNumber"}, "mask": {"tags": ["AccessionNumber"]}}
    )
    registry = MappingRegistry({"A0012345": "ACC_1"})
    result, identifier = deidentify(dataset, config, registry)
    assert identifier == "ACC_1"
    assert result.AccessionNumber == "ACC_1"
    assert result.PatientID == "U1423571"


def test_deidentify_missing_match_tag(dicom_factory, deid_config, mapping_table):
    dataset = read_dicom(dicom_factory("nopid.dcm", PatientID=None))
    with pytest.raises(MissingMatchTag):
        deidentify(dataset, deid_config, MappingRegistry.from_file(mapping_table))


def test_deidentify_unmapped(dicom_factory, deid_config, mapping_table):
    dataset = read_dicom(dicom_factory("other.dcm", PatientID="U5555555"))
    with pytest.raises(UnmappedIdentity):
        deidentify(dataset, deid_config, MappingRegistry.from_file(mapping_table))


def test_person_name_tags(dataset):
    dataset.ReferringPhysicianName = "WHO^DR"
    keywords = [str(ref) for ref in person_name_tags(dataset)]
    assert sorted(keywords) == ["PatientName", "ReferringPhysicianName"]


def test_anonymize(dicom_factory):
    a = read_dicom(dicom_factory("a.dcm", InstanceNumber=1))
    b = read_dicom(dicom_factory("b.dcm", InstanceNumber=2))
    registry = AnonymousRegistry()
    result_a, id_a = anonymize(a, registry, TagReference.parse("PatientID"))
    result_b, id_b = anonymize(b, registry, TagReference.parse("PatientID"))
    assert id_a == id_b
    uuid.UUID(id_a)
    assert result_a.PatientID == id_a
    assert str(result_a.PatientName) == id_a
    assert result_a.InstitutionName == id_a
    assert result_a.AccessionNumber == id_a[:16]
    assert result_a.PatientIdentityRemoved == "YES"
    assert result_a.PatientSex == "O"
    assert result_a.PatientAge == "099Y"
    assert not has_private(result_a)
    # series and study stay together but get new UIDs
    assert result_a.SeriesInstanceUID == result_b.SeriesInstanceUID
    assert result_a.SeriesInstanceUID != SERIES_UID
    assert result_a.StudyInstanceUID == result_b.StudyInstanceUID
    assert result_a.StudyInstanceUID != STUDY_UID
    assert result_a.SOPInstanceUID != result_b.SOPInstanceUID
    assert result_a.SOPInstanceUID != a.SOPInstanceUID
    assert result_a.file_meta.MediaStorageSOPInstanceUID == result_a.SOPInstanceUID
    assert a.PatientID == "U1423571"


def test_anonymize_prefix(dataset):
    result, identifier = anonymize(
        dataset, AnonymousRegistry("TRIAL"), TagReference.parse("PatientID")
    )
    assert identifier.startswith("TRIAL_")
    assert result.PatientID == identifier


def test_anonymize_missing_match_tag(dicom_factory):
    dataset = read_dicom(dicom_factory("nopid.dcm", PatientID=None))
    registry = AnonymousRegistry()
    _, identifier = anonymize(dataset, registry, TagReference.parse("PatientID"))
    assert "NoValue_PatientID" in registry
    assert dict(registry.items())["NoValue_PatientID"] == identifier


def test_apply(dataset, deid_config, mapping_table):
    registry = MappingRegistry.from_file(mapping_table)
    result, identifier = apply(dataset, deid_config, registry, "deid")
    assert result.PatientID == identifier == "DeID_001"
    with pytest.raises(ValueError):
        apply(dataset, deid_config, registry, "sort")
