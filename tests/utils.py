from pathlib import Path

STUDY_UID = "1.2.826.0.1.3680043.8.498.11111111111111111111"
SERIES_UID = "1.2.826.0.1.3680043.8.498.22222222222222222222"


def assert_datasets_equal(expect, got, skip=None):
    """Every element of expect, apart from the tags in skip, should be in
    got with the same value"""
    skip = skip or []
    for element in expect:
        if element.tag in skip:
            continue
        assert element.tag in got, f"{element.keyword} missing"
        assert got[element.tag].value == element.value


def output_files(destination):
    """All of the DICOMs written to destination, not counting copies of
    skipped or failed files"""
    return sorted(
        f
        for f in Path(destination).glob("**/*.dcm")
        if f.relative_to(destination).parts[0] not in ["NON_DICOM", "FAILED_CASES"]
    )
