import re
import logging
from dataclasses import dataclass

from pydicom.datadict import dictionary_VR, keyword_for_tag, tag_for_keyword
from pydicom.tag import BaseTag, Tag

logger = logging.getLogger(__name__)

# "00100020" or "(0010,0020)"
HEX_TAG_RE = re.compile(r"^\(?([0-9A-Fa-f]{4}),?([0-9A-Fa-f]{4})\)?$")

# VRs which can hold an arbitrary identifier string
TEXT_VRS = ["AE", "CS", "LO", "LT", "PN", "SH", "ST", "UC", "UT"]

ALL_VRS = TEXT_VRS + [
    "AS",
    "AT",
    "DA",
    "DS",
    "DT",
    "FD",
    "FL",
    "IS",
    "OB",
    "OD",
    "OF",
    "OL",
    "OV",
    "OW",
    "SL",
    "SQ",
    "SS",
    "SV",
    "TM",
    "UI",
    "UL",
    "UN",
    "UR",
    "US",
    "UV",
]

# VRs which can't be set from a cookbook string
BINARY_VRS = ["OB", "OD", "OF", "OL", "OV", "OW", "SQ", "UN"]


@dataclass(frozen=True)
class TagReference:
    """
    A DICOM attribute, identified by its (group, element) tag and, for
    standard attributes, its dictionary keyword. Build these with
    TagReference.parse rather than directly.
    """

    tag: BaseTag
    keyword: str

    @classmethod
    def parse(cls, name):
        """
        Resolve a tag name against the standard DICOM dictionary. Names are
        case sensitive keywords like "PatientID", or hex tags like "00100020"
        and "(0010,0020)".

        Raises ValueError if the name can't be resolved
        ---
        name: str

        returns: TagReference
        """
        m = HEX_TAG_RE.match(name.strip())
        if m:
            tag = Tag(int(m.group(1), 16), int(m.group(2), 16))
            return cls(tag, keyword_for_tag(tag) or str(tag))
        tag = tag_for_keyword(name)
        if tag is None:
            raise ValueError(f"Unknown DICOM keyword {name}")
        return cls(Tag(tag), name)

    @property
    def vr(self):
        """The dictionary VR, using the first alternative for ambiguous
        entries like 'US or SS'. None for private or unknown tags."""
        try:
            return dictionary_VR(self.tag).split(" or ")[0]
        except KeyError:
            return None

    @property
    def is_private(self):
        return self.tag.is_private

    def __str__(self):
        return self.keyword


PATIENT_ID = TagReference.parse("PatientID")


def parse_tags(names, section):
    """
    Resolve a list of tag names from a cookbook section, dropping and
    warning about any which aren't valid.
    ---
    names: list of str
    section: str, for log messages

    returns: list of TagReference
    """
    tags = []
    for name in names:
        try:
            ref = TagReference.parse(name)
        except ValueError:
            logger.warning(f"[{section}] tag {name} is not valid")
            continue
        if ref not in tags:
            tags.append(ref)
    return tags
