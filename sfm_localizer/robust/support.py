"""
Strong-support check for a robust resection.

Each inlier contributes according to the kind of feature that produced it:
fiducial markers are reliable on their own, generic local features need many
more inliers before a pose is trusted.
"""

from __future__ import annotations

from enum import Enum
from typing import Sequence, Union

import numpy as np


class DescriberType(str, Enum):
    """Image describer families a correspondence can come from."""

    UNKNOWN = "unknown"
    SIFT = "sift"
    SIFT_FLOAT = "sift_float"
    SIFT_UPRIGHT = "sift_upright"
    DSPSIFT = "dspsift"
    AKAZE = "akaze"
    AKAZE_LIOP = "akaze_liop"
    AKAZE_MLDB = "akaze_mldb"
    ORB = "orb"
    CCTAG3 = "cctag3"
    CCTAG4 = "cctag4"
    APRILTAG16H5 = "apriltag16h5"

    @classmethod
    def parse(cls, value: Union[str, "DescriberType"]) -> "DescriberType":
        """
        Raises:
            ValueError: If `value` does not name a known describer type.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown describer type: {value!r}") from None


MARKER_TYPES = frozenset(
    {DescriberType.CCTAG3, DescriberType.CCTAG4, DescriberType.APRILTAG16H5}
)

# Weight of a generic local feature (about 7 of them count as one marker).
FEATURE_SUPPORT_COEFF = 0.14
MARKER_SUPPORT_COEFF = 1.0


def strong_support_coeff(desc_type: Union[str, DescriberType]) -> float:
    if DescriberType.parse(desc_type) in MARKER_TYPES:
        return MARKER_SUPPORT_COEFF
    return FEATURE_SUPPORT_COEFF


def has_strong_support(
    inliers: Sequence[int],
    desc_types: Sequence[Union[str, DescriberType]],
    minimum_samples: int,
) -> bool:
    """
    Check that a set of inliers supports a model strongly enough.

    Args:
        inliers: Indices of the inlier correspondences.
        desc_types: Describer type of every correspondence.
        minimum_samples: Minimal sample size of the solver that produced the model.

    Returns:
        True if the weighted inlier count exceeds the minimal sample size.
    """
    inliers = np.asarray(inliers, dtype=int)
    if inliers.size > len(desc_types):
        raise ValueError(
            f"More inliers ({inliers.size}) than describer types ({len(desc_types)})"
        )
    score = sum(strong_support_coeff(desc_types[i]) for i in inliers)
    return score > minimum_samples


__all__ = [
    "DescriberType",
    "MARKER_TYPES",
    "strong_support_coeff",
    "has_strong_support",
]
