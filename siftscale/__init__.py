from .dog import build_dog
from .extrema import detect_extrema, detect_octave_extrema
from .gaussian import build_scale_space
from .params import SiftParams
from .pipeline import Sift, SiftResult, compute
from .refine import refine_candidate, refine_keypoints
from .structures import (
    DifferenceOfGaussians,
    Extremum,
    ExtremaResult,
    RefinedKeypoint,
    RefinementReport,
    RefinementStatus,
    ScaleExtrema,
    ScaleLevel,
    ScaleSpace,
)
from .tiles import PipelineCancelled, TileExecutor

__version__ = "0.1.0"
