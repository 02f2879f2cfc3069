import re
import copy
import logging
from dicomanonymizer import anonymize_dataset, keep
from pydicom.uid import generate_uid

from dcmrig.cookbook import AddConfig, DeleteConfig, MaskConfig, TransformConfig
from dcmrig.dicoms import NO_VALUE, tag_value
from dcmrig.tags import TEXT_VRS, TagReference

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"{(.*?)}")

# Maximum value lengths for the VRs which have one, for fitting identifiers
# and added values into their tags

VR_MAX_LENGTH = {"AE": 16, "CS": 16, "LO": 64, "PN": 64, "SH": 16, "ST": 1024}

INT_VRS = ["SL", "SS", "SV", "UL", "US", "UV"]
FLOAT_VRS = ["FD", "FL"]

# The fixed anonymization profile for anon mode

ANON_MASK_TAGS = [
    TagReference.parse(keyword)
    for keyword in [
        "PatientID",
        "PatientName",
        "InstitutionName",
        "InstitutionAddress",
        "AccessionNumber",
        "StudyID",
        "PatientComments",
    ]
]

ANON_ADD_TAGS = {
    TagReference.parse("PatientIdentityRemoved"): "YES",
    TagReference.parse("DeidentificationMethod"): "DCMRig",
    TagReference.parse("PatientAge"): "099Y",
    TagReference.parse("PatientSex"): "O",
}

ANON_DELETE = DeleteConfig(
    tags=[TagReference.parse("OriginalAttributesSequence")], private_tags=True
)

ANON_UID_TAGS = [
    TagReference.parse(keyword)
    for keyword in [
        "StudyInstanceUID",
        "SeriesInstanceUID",
        "SOPInstanceUID",
        "FrameOfReferenceUID",
    ]
]


class TransformError(Exception):
    pass


class MissingMatchTag(TransformError):
    def __init__(self, ref):
        super().__init__(f"No value for match tag {ref}")
        self.ref = ref


def fit_to_vr(value, vr):
    """
    Make a string acceptable for a VR: code strings are upper-cased and
    may only contain letters, digits, spaces and underscores, and values are
    truncated to the VR's maximum length.
    """
    if vr == "CS":
        value = re.sub(r"[^A-Z0-9 _]", "_", value.upper())
    max_length = VR_MAX_LENGTH.get(vr)
    if max_length is not None and len(value) > max_length:
        logger.debug(f"Truncating {value} to {max_length} characters for {vr}")
        value = value[:max_length]
    return value


def match_key(dataset, match_tag, mode):
    """
    Get the value of the match tag which identifies the patient. A missing
    value is an error for deid, but anon puts all such files under a
    single placeholder key.
    ---
    dataset: pydicom.Dataset
    match_tag: TagReference
    mode: str

    returns: str

    raises: MissingMatchTag
    """
    key = tag_value(dataset, match_tag)
    if key is None:
        if mode == "deid":
            raise MissingMatchTag(match_tag)
        key = NO_VALUE.format(match_tag)
        logger.debug(f"No {match_tag}, using {key}")
    return key


def render_template(template, dataset):
    """
    Fill {Keyword} placeholders in an add value from the dataset. Anything
    which can't be resolved is rendered as an empty string.
    """

    def replace(m):
        try:
            ref = TagReference.parse(m.group(1))
        except ValueError:
            logger.debug(f"Unknown placeholder {m.group(0)} in {template}")
            return ""
        value = tag_value(dataset, ref)
        return "" if value is None else value

    return PLACEHOLDER_RE.sub(replace, template)


def mask_phase(dataset, mask, identifier):
    """
    Replace the value of each mask tag present in the dataset with the
    identifier. Tags which are absent, or whose VR isn't in mask.vrs when
    that's set, are left alone.
    ---
    dataset: pydicom.Dataset, modified in place
    mask: MaskConfig
    identifier: str

    returns: the dataset
    """
    for ref in mask.tags:
        if ref.tag not in dataset:
            logger.debug(f"Mask: {ref} not found")
            continue
        element = dataset[ref.tag]
        if mask.vrs and element.VR not in mask.vrs:
            continue
        if element.VR not in TEXT_VRS:
            logger.debug(f"Mask: {ref} has VR {element.VR}, can't mask")
            continue
        element.value = fit_to_vr(identifier, element.VR)
    return dataset


def add_phase(dataset, add):
    """
    Set each add tag to its value, with placeholders resolved against the
    dataset as it is after masking. Creates the tag if it isn't there.

    raises: TransformError if a value can't be converted to the tag's VR
    """
    for ref, template in add.tags.items():
        value = render_template(template, dataset)
        vr = ref.vr or "LO"
        try:
            if vr in INT_VRS:
                value = int(value)
            elif vr in FLOAT_VRS:
                value = float(value)
            else:
                value = fit_to_vr(value, vr)
        except ValueError:
            raise TransformError(f"Can't add {ref}: '{value}' is not valid for {vr}")
        if ref.tag in dataset:
            dataset[ref.tag].value = value
        else:
            dataset.add_new(ref.tag, vr, value)
    return dataset


def delete_phase(dataset, delete):
    """Remove the delete tags, and all private tags if configured. Deleting
    a tag which isn't there does nothing."""
    for ref in delete.tags:
        if ref.tag in dataset:
            del dataset[ref.tag]
        else:
            logger.debug(f"Delete: {ref} not found")
    if delete.private_tags:
        dataset.remove_private_tags()
    return dataset


def apply_chain(dataset, config, identifier):
    """
    Run the mask, add and delete phases, always in that order.
    """
    dataset = mask_phase(dataset, config.mask, identifier)
    dataset = add_phase(dataset, config.add)
    return delete_phase(dataset, config.delete)


def deidentify(dataset, config, registry):
    """
    Deidentify a dataset by applying the cookbook chain with the identifier
    for its match tag. Returns a new dataset and the identifier; the input
    dataset is not changed.
    ---
    dataset: pydicom.Dataset
    config: TransformConfig
    registry: IdentityRegistry

    returns: ( pydicom.Dataset, str )

    raises: MissingMatchTag, UnmappedIdentity, TransformError
    """
    identifier = registry.resolve(match_key(dataset, config.match_tag, "deid"))
    result = apply_chain(copy.deepcopy(dataset), config, identifier)
    return result, identifier


def replace_uids(dataset):
    """
    Replace instance UIDs with new ones derived from the originals, so that
    files from the same study or series stay together without any shared
    state between workers.
    """
    for ref in ANON_UID_TAGS:
        original = tag_value(dataset, ref)
        if original is not None:
            dataset[ref.tag].value = generate_uid(entropy_srcs=[original])
    file_meta = getattr(dataset, "file_meta", None)
    if file_meta is not None and "SOPInstanceUID" in dataset:
        file_meta.MediaStorageSOPInstanceUID = dataset.SOPInstanceUID
    return dataset


def person_name_tags(dataset):
    return [
        TagReference(element.tag, element.keyword or str(element.tag))
        for element in dataset
        if element.VR == "PN"
    ]


def anonymize(dataset, registry, match_tag):
    """
    Anonymize a dataset with the standard profile from dicomanonymizer,
    then mask identifying tags and all person names with the registry's
    identifier, rewrite instance UIDs and strip private tags.

    Returns a new dataset and the identifier.
    ---
    dataset: pydicom.Dataset
    registry: IdentityRegistry
    match_tag: TagReference

    returns: ( pydicom.Dataset, str )
    """
    identifier = registry.resolve(match_key(dataset, match_tag, "anon"))
    result = copy.deepcopy(dataset)
    kept = ANON_UID_TAGS + ANON_MASK_TAGS + [match_tag]
    rules = {(ref.tag.group, ref.tag.elem): keep for ref in kept}
    anonymize_dataset(result, rules, True)
    replace_uids(result)
    profile = TransformConfig(
        match_tag=match_tag,
        mask=MaskConfig(tags=ANON_MASK_TAGS + person_name_tags(result)),
        add=AddConfig(tags=dict(ANON_ADD_TAGS)),
        delete=ANON_DELETE,
    )
    return apply_chain(result, profile, identifier), identifier


def apply(dataset, config, registry, mode):
    """
    Transform a dataset for deid or anon mode. Sort mode doesn't change the
    file, so there's nothing to apply.
    """
    if mode == "deid":
        return deidentify(dataset, config, registry)
    if mode == "anon":
        return anonymize(dataset, registry, config.match_tag)
    raise ValueError(f"No transformation for mode {mode}")
