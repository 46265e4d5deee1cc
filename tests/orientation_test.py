#!/usr/bin/env python3
"""
爪の3D姿勢推定テスト
基底の正規直交性・右手系・左手の法線反転・退化入力
"""

import pytest
import numpy as np
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from nailtrack.config import OrientationConfig
from nailtrack.data_types import (
    Detection, HandednessType, HandLandmark, NailMatch, OrientationBasis
)
from nailtrack.detection.landmarks import create_mock_landmark_set
from nailtrack.matching.orientation import (
    OrientationEstimator, build_orientation_basis, extract_dimensions
)

from conftest import FRAME_SIZE


def _match_for(hand, tip: int, polygon: np.ndarray) -> NailMatch:
    detection = Detection(score=0.9, bbox=(0.0, 0.0, 10.0, 20.0), polygon=polygon)
    return NailMatch(
        detection=detection,
        detection_index=0,
        hand_id=hand.id,
        hand_index=0,
        handedness=hand.handedness,
        fingertip_index=tip,
        fingertip_position=hand.pixel_position(tip, FRAME_SIZE, FRAME_SIZE),
        centroid=detection.centroid,
        match_score=0.9
    )


def _ellipse(center, half_width, half_length, samples=64):
    theta = np.linspace(0, 2 * np.pi, samples, endpoint=False)
    return np.column_stack([
        center[0] + half_width * np.cos(theta),
        center[1] + half_length * np.sin(theta)
    ])


class TestBasisConstruction:
    """基底構築のテスト"""

    @pytest.mark.parametrize("handedness", [HandednessType.RIGHT, HandednessType.LEFT])
    @pytest.mark.parametrize("rotation", [0.0, 0.7, -1.2, 2.5])
    @pytest.mark.parametrize("tip", [4, 8, 12, 16, 20])
    def test_orthonormal_right_handed(self, assert_helper, handedness, rotation, tip):
        hand = create_mock_landmark_set(handedness=handedness, rotation=rotation)
        basis = OrientationEstimator().build_basis(hand, tip, FRAME_SIZE, FRAME_SIZE)

        assert basis is not None
        matrix = basis.as_matrix()
        assert_helper.assert_orthonormal(matrix, tolerance=1e-5)
        triple = np.dot(basis.x_axis, np.cross(basis.y_axis, basis.z_axis))
        assert triple == pytest.approx(1.0, abs=1e-5)

    def test_upright_right_hand_axes(self):
        """上向きの右手: 幅軸 +x、長さ軸 -y、法線は奥向き"""
        hand = create_mock_landmark_set(handedness=HandednessType.RIGHT)
        basis = OrientationEstimator().build_basis(hand, 12, FRAME_SIZE, FRAME_SIZE)

        assert basis.x_axis[0] > 0.95
        assert basis.z_axis[1] < -0.95
        assert basis.y_axis[2] > 0.95

    def test_left_hand_normal_matches_right(self):
        """鏡像の左手でも法線は同じ向き"""
        estimator = OrientationEstimator()
        right = estimator.build_basis(create_mock_landmark_set(handedness=HandednessType.RIGHT), 8, FRAME_SIZE, FRAME_SIZE)
        left = estimator.build_basis(create_mock_landmark_set(handedness=HandednessType.LEFT), 8, FRAME_SIZE, FRAME_SIZE)

        assert np.dot(right.y_axis, left.y_axis) > 0.95

    def test_coincident_points_rejected(self):
        points = np.zeros((21, 3))
        assert build_orientation_basis(points, 8, 7, 0, (5, 17)) is None

    def test_collinear_palm_rejected(self):
        points = np.zeros((21, 3))
        points[:, 1] = -np.arange(21, dtype=np.float64)
        # 手首・付け根2点を一直線に並べる
        points[0] = [0.0, 0.0, 0.0]
        points[5] = [1.0, 1.0, 0.0]
        points[17] = [2.0, 2.0, 0.0]
        assert build_orientation_basis(points, 8, 7, 0, (5, 17)) is None

    def test_out_of_range_index_rejected(self):
        points = np.random.default_rng(0).normal(size=(10, 3))
        assert build_orientation_basis(points, 8, 7, 0, (5, 17)) is None

    def test_non_finite_input_rejected(self):
        hand = create_mock_landmark_set()
        hand.landmarks[8] = HandLandmark(x=float('nan'), y=0.5, z=0.0)
        assert OrientationEstimator().build_basis(hand, 8, FRAME_SIZE, FRAME_SIZE) is None

    def test_pip_length_axis(self):
        config = OrientationConfig(proximal_joint="PIP")
        basis = OrientationEstimator(config).build_basis(create_mock_landmark_set(), 8, FRAME_SIZE, FRAME_SIZE)
        assert basis is not None
        assert basis.z_axis[1] < -0.9

    @pytest.mark.parametrize("joint,proximal", [("DIP", 15), ("PIP", 14)])
    def test_length_axis_uses_configured_joint(self, joint, proximal):
        """長さ軸の始点は同じ指の DIP / PIP 関節"""
        hand = create_mock_landmark_set(rotation=0.4)
        config = OrientationConfig(proximal_joint=joint)
        basis = OrientationEstimator(config).build_basis(hand, 16, FRAME_SIZE, FRAME_SIZE)

        points = hand.to_array() * FRAME_SIZE
        expected = build_orientation_basis(points, 16, proximal, 0, (5, 17))
        assert basis is not None
        np.testing.assert_allclose(basis.z_axis, expected.z_axis, atol=1e-12)

    def test_non_fingertip_has_no_basis(self):
        assert OrientationEstimator().build_basis(create_mock_landmark_set(), 7, FRAME_SIZE, FRAME_SIZE) is None


class TestDimensions:
    """寸法・角度抽出のテスト"""

    def _upright_basis(self):
        return OrientationBasis(
            x_axis=np.array([1.0, 0.0, 0.0]),
            y_axis=np.array([0.0, 0.0, 1.0]),
            z_axis=np.array([0.0, -1.0, 0.0])
        )

    def test_ellipse_dimensions(self):
        polygon = _ellipse((50.0, 50.0), 4.0, 7.0)
        width, height, angle = extract_dimensions(polygon, (50.0, 50.0), self._upright_basis())

        assert width == pytest.approx(8.0, abs=1e-9)
        assert height == pytest.approx(14.0, abs=1e-9)
        assert angle == pytest.approx(-np.pi / 2)

    def test_degenerate_planar_axis_uses_bbox(self):
        """長さ軸がカメラ方向なら bbox で近似"""
        basis = OrientationBasis(
            x_axis=np.array([1.0, 0.0, 0.0]),
            y_axis=np.array([0.0, -1.0, 0.0]),
            z_axis=np.array([0.0, 0.0, 1.0])
        )
        width, height, _ = extract_dimensions(_ellipse((0, 0), 3, 3), (0.0, 0.0), basis, bbox=(0, 0, 12.0, 5.0))
        assert (width, height) == (5.0, 12.0)


class TestOrientationEstimator:
    """OrientationEstimator のテスト"""

    def test_estimate_sets_fields(self, right_hand):
        tip = right_hand.pixel_position(12, FRAME_SIZE, FRAME_SIZE)
        match = _match_for(right_hand, 12, _ellipse(tip, 4.0, 7.0))
        result = OrientationEstimator().estimate(match, right_hand, FRAME_SIZE, FRAME_SIZE)

        assert result.has_orientation
        assert result.width < result.height
        assert result.angle == pytest.approx(-np.pi / 2, abs=0.1)
        assert result.raw_angle == result.angle
        # 入力は変更しない
        assert match.orientation is None

    def test_degenerate_geometry_keeps_match(self):
        landmarks = [HandLandmark(x=0.5, y=0.5, z=0.0) for _ in range(21)]
        hand = create_mock_landmark_set()
        hand.landmarks = landmarks
        match = _match_for(hand, 8, _ellipse((320.0, 320.0), 4.0, 7.0))

        estimator = OrientationEstimator()
        results = estimator.estimate_all([match], [hand], FRAME_SIZE, FRAME_SIZE)

        assert len(results) == 1
        assert results[0].orientation is None
        assert results[0].angle is None
        assert results[0].width is None
        assert estimator.get_stats()['rejected_geometry'] == 1

    def test_one_bad_hand_does_not_affect_others(self, right_hand):
        bad = create_mock_landmark_set(hand_id="left", handedness=HandednessType.LEFT)
        bad.landmarks = [HandLandmark(x=0.2, y=0.2, z=0.0) for _ in range(21)]
        good_match = _match_for(right_hand, 8, _ellipse((300.0, 260.0), 4.0, 7.0))
        bad_match = _match_for(bad, 8, _ellipse((100.0, 100.0), 4.0, 7.0))
        bad_match.hand_index = 1

        results = OrientationEstimator().estimate_all(
            [good_match, bad_match], [right_hand, bad], FRAME_SIZE, FRAME_SIZE
        )
        assert results[0].has_orientation
        assert not results[1].has_orientation
