import math
import threading

import numpy as np
import pytest

from conftest import quadratic_dog
from siftscale.params import SiftParams
from siftscale.refine import count_by_status, refine_candidate, refine_keypoints
from siftscale.structures import (
    DifferenceOfGaussians,
    Extremum,
    RefinementStatus,
    ScaleExtrema,
    ScaleLevel,
)
from siftscale.tiles import PipelineCancelled

DIAG = np.diag([0.5, 0.8, 0.8])
SHAPE = (5, 9, 9)


@pytest.fixture
def params():
    return SiftParams(n_oct=2, n_spo=3)


def test_converges_on_quadratic_peak(params):
    dog = quadratic_dog(SHAPE, (2.3, 4.2, 3.75), DIAG)
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.CONVERGED
    assert out.iterations == 1
    assert (out.scale_level, out.local_y, out.local_x) == (2, 4, 4)
    np.testing.assert_allclose(out.offset, (0.3, 0.2, -0.25), atol=1e-9)
    assert out.value == pytest.approx(1.0, abs=1e-9)

    kp = out.keypoint
    assert kp is not None
    assert (kp.octave, kp.scale_level, kp.local_y, kp.local_x) == (0, 2, 4, 4)
    assert kp.absolute_x == pytest.approx(1.875, abs=1e-9)
    assert kp.absolute_y == pytest.approx(2.1, abs=1e-9)
    assert kp.absolute_sigma == pytest.approx(0.8 * 2 ** (2.3 / 3), abs=1e-9)
    assert kp.interpolated_value == pytest.approx(1.0, abs=1e-9)


def test_keypoint_coordinates_scale_with_octave(params):
    dog = quadratic_dog(SHAPE, (2.3, 4.2, 3.75), DIAG)
    kp = refine_candidate(dog, 2, 2, 4, 4, params).keypoint
    assert kp.absolute_x == pytest.approx(2.0 * 3.75, abs=1e-9)
    assert kp.absolute_y == pytest.approx(2.0 * 4.2, abs=1e-9)
    assert kp.absolute_sigma == pytest.approx(4.0 * 0.8 * 2 ** (2.3 / 3), abs=1e-9)


def test_full_hessian_gives_exact_offset(params):
    A = np.array([[0.6, 0.1, 0.05], [0.1, 0.9, 0.2], [0.05, 0.2, 0.7]])
    dog = quadratic_dog(SHAPE, (2.2, 3.6, 4.4), A, top=-0.4)
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.CONVERGED
    np.testing.assert_allclose(out.offset, (0.2, -0.4, 0.4), atol=1e-9)
    assert out.value == pytest.approx(-0.4, abs=1e-9)


def test_minimum_converges_like_maximum(params):
    dog = -quadratic_dog(SHAPE, (2.1, 3.8, 4.3), DIAG)
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.CONVERGED
    np.testing.assert_allclose(out.offset, (0.1, -0.2, 0.3), atol=1e-9)
    assert out.value == pytest.approx(-1.0, abs=1e-9)


def test_moves_to_neighbouring_sample(params):
    dog = quadratic_dog((5, 12, 10), (2.0, 5.9, 4.1), DIAG)
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.CONVERGED
    assert out.iterations == 2
    assert (out.scale_level, out.local_y, out.local_x) == (2, 6, 4)
    np.testing.assert_allclose(out.offset, (0.0, -0.1, 0.1), atol=1e-9)
    assert out.keypoint.absolute_y == pytest.approx(0.5 * 5.9, abs=1e-9)


def test_iteration_cap():
    dog = quadratic_dog((5, 12, 10), (2.0, 5.9, 4.1), DIAG)
    out = refine_candidate(dog, 0, 2, 4, 4, SiftParams(max_iterations=1))
    assert out.status is RefinementStatus.NO_CONVERGENCE
    assert out.iterations == 1
    assert out.keypoint is None


def test_singular_hessian_is_reported_not_raised(params):
    m, n = np.mgrid[0:9, 0:9].astype(np.float64)
    plane = 1.0 - 0.4 * ((m - 4.2) ** 2 + (n - 3.9) ** 2)
    dog = np.repeat(plane[np.newaxis], 5, axis=0)
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.NO_CONVERGENCE
    assert out.keypoint is None


def test_offset_leaving_the_octave(params):
    dog = quadratic_dog(SHAPE, (2.0, 4.0, 20.0), DIAG)
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.OUT_OF_BOUNDS
    assert out.iterations == 1
    assert out.local_x == 20


def test_weak_interpolated_value_is_low_contrast(params):
    dog = 0.001 * quadratic_dog(SHAPE, (2.3, 4.2, 3.75), DIAG)
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.LOW_CONTRAST
    assert out.value == pytest.approx(0.001, abs=1e-12)
    assert out.keypoint is None


def test_elongated_response_is_discarded(params):
    # curvature ratio (0.8 + 0.02)^2 / 0.016 = 42
    dog = quadratic_dog(SHAPE, (2.1, 4.1, 4.1), np.diag([0.5, 0.8, 0.02]))
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.EDGE
    assert out.keypoint is None


def test_saddle_in_space_has_negative_ratio_and_is_kept(params):
    dog = quadratic_dog(SHAPE, (2.1, 4.1, 4.1), np.diag([0.5, 0.8, -0.8]))
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.CONVERGED
    np.testing.assert_allclose(out.offset, (0.1, 0.1, 0.1), atol=1e-9)
    assert out.value == pytest.approx(1.0, abs=1e-9)
    assert out.keypoint is not None


def test_singular_spatial_curvature_is_an_edge(params):
    # dyadic entries keep the finite differences exact, so det(H_mn) == 0
    A = np.array([[0.5, 0.25, 0.0], [0.25, 0.75, 0.75], [0.0, 0.75, 0.75]])
    dog = quadratic_dog(SHAPE, (2.125, 4.125, 3.75), A)
    out = refine_candidate(dog, 0, 2, 4, 4, params)
    assert out.status is RefinementStatus.EDGE
    assert out.iterations == 1
    assert out.keypoint is None


def test_edge_threshold_follows_c_edge():
    dog = quadratic_dog(SHAPE, (2.1, 4.1, 4.1), np.diag([0.5, 0.8, 0.2]))
    # ratio (0.8 + 0.2)^2 / 0.16 = 6.25
    assert refine_candidate(dog, 0, 2, 4, 4, SiftParams()).status is (
        RefinementStatus.CONVERGED
    )
    assert refine_candidate(dog, 0, 2, 4, 4, SiftParams(C_edge=3.0)).status is (
        RefinementStatus.EDGE
    )


def test_input_is_not_modified(params):
    dog = quadratic_dog(SHAPE, (2.3, 4.2, 3.75), DIAG)
    before = dog.copy()
    refine_candidate(dog, 0, 2, 4, 4, params)
    np.testing.assert_array_equal(dog, before)


@pytest.mark.parametrize("s,m,n", [(0, 4, 4), (4, 4, 4), (2, 0, 4), (2, 4, 8)])
def test_start_must_be_interior(params, s, m, n):
    dog = quadratic_dog(SHAPE, (2.3, 4.2, 3.75), DIAG)
    with pytest.raises(ValueError):
        refine_candidate(dog, 0, s, m, n, params)


def _octave(stack):
    return tuple(ScaleLevel(float(i + 1), stack[i]) for i in range(stack.shape[0]))


def _two_octave_dog():
    good = quadratic_dog((5, 10, 10), (2.3, 4.2, 3.75), DIAG)
    edgy = quadratic_dog((5, 8, 8), (2.1, 4.1, 4.1), np.diag([0.5, 0.8, 0.02]))
    return DifferenceOfGaussians((_octave(good), _octave(edgy)))


def _candidates(*points):
    return [Extremum(x=x, y=y, value=0.0) for x, y in points]


def test_refine_keypoints_batches(params, executor):
    dog = _two_octave_dog()
    extrema = [
        [
            ScaleExtrema(0, 1, _candidates((4, 4))),
            ScaleExtrema(0, 2, _candidates((4, 4), (7, 4))),
            ScaleExtrema(0, 3, []),
        ],
        [ScaleExtrema(1, 2, _candidates((4, 4)))],
    ]
    report = refine_keypoints(dog, extrema, params, executor=executor)
    assert report.n_candidates == 4
    assert report.counts[RefinementStatus.CONVERGED] == 3
    assert report.counts[RefinementStatus.EDGE] == 1
    assert report.discarded()[RefinementStatus.EDGE] == 1
    assert report.discarded()[RefinementStatus.OUT_OF_BOUNDS] == 0
    assert count_by_status(report)["EDGE"] == 1

    assert [(kp.octave, kp.scale_level, kp.local_y, kp.local_x) for kp in report.keypoints] == [
        (0, 2, 4, 4)
    ] * 3
    for kp in report.keypoints:
        assert kp.absolute_x == pytest.approx(1.875, abs=1e-9)
        assert kp.absolute_sigma == pytest.approx(0.8 * 2 ** (2.3 / 3), abs=1e-9)
        assert math.isfinite(kp.interpolated_value)

    again = refine_keypoints(dog, extrema, params, executor=executor)
    assert again.keypoints == report.keypoints


def test_refine_keypoints_rejects_bad_input(params):
    dog = _two_octave_dog()
    with pytest.raises(ValueError):
        refine_keypoints(dog, [[ScaleExtrema(1, 2, _candidates((4, 4)))]], params)
    with pytest.raises(ValueError):
        refine_keypoints(dog, [[ScaleExtrema(0, 2, _candidates((0, 4)))]], params)
    with pytest.raises(ValueError):
        refine_keypoints(dog, [[], [], []], params)


def test_refine_keypoints_cancel(params):
    cancel = threading.Event()
    cancel.set()
    extrema = [[ScaleExtrema(0, 2, _candidates((4, 4)))]]
    with pytest.raises(PipelineCancelled):
        refine_keypoints(_two_octave_dog(), extrema, params, cancel=cancel)
