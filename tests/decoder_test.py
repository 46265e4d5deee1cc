#!/usr/bin/env python3
"""
検出テンソルデコーダのテスト
レイアウト解釈・信頼度フィルタ・座標変換・NMS
"""

import unittest
import numpy as np
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from nailtrack.config import DecoderConfig
from nailtrack.segmentation.decoder import (
    TensorDecoder, calculate_iou, apply_nms, decode_detections, create_mock_model_outputs
)


def _predictions(boxes, scores, num_coeffs=0, num_candidates=None):
    """(cx, cy, w, h) と スコアから [5+M, D] テンソルを作る"""
    num_candidates = num_candidates or len(boxes)
    matrix = np.zeros((5 + num_coeffs, num_candidates), dtype=np.float32)
    for i, (box, score) in enumerate(zip(boxes, scores)):
        matrix[:4, i] = box
        matrix[4, i] = score
        if num_coeffs:
            matrix[5:, i] = np.arange(num_coeffs) + i
    return matrix


class TestIoU(unittest.TestCase):
    """IoU計算のテスト"""

    def test_identical_boxes(self):
        self.assertAlmostEqual(calculate_iou((0, 0, 10, 10), (0, 0, 10, 10)), 1.0)

    def test_disjoint_boxes(self):
        self.assertEqual(calculate_iou((0, 0, 10, 10), (20, 20, 10, 10)), 0.0)

    def test_partial_overlap(self):
        # 交差 15x25=375, 和 600+600-375=825
        iou = calculate_iou((0, 0, 20, 30), (5, 5, 20, 30))
        self.assertAlmostEqual(iou, 375 / 825)

    def test_zero_area_box(self):
        """面積0の矩形は何とも重ならない"""
        self.assertEqual(calculate_iou((5, 5, 0, 10), (0, 0, 20, 20)), 0.0)
        self.assertEqual(calculate_iou((0, 0, 0, 0), (0, 0, 0, 0)), 0.0)


class TestNMS(unittest.TestCase):
    """Non-Maximum Suppression のテスト"""

    def test_suppresses_overlapping_lower_score(self):
        boxes = np.array([[0, 0, 20, 30], [2, 2, 20, 30]], dtype=np.float64)
        keep = apply_nms(boxes, np.array([0.9, 0.8]), 0.45)
        self.assertEqual(keep, [0])

    def test_keeps_disjoint_boxes_in_score_order(self):
        boxes = np.array([[0, 0, 10, 10], [100, 100, 10, 10], [200, 0, 10, 10]], dtype=np.float64)
        keep = apply_nms(boxes, np.array([0.5, 0.9, 0.7]), 0.45)
        self.assertEqual(keep, [1, 2, 0])

    def test_threshold_is_strict(self):
        """IoU が閾値ちょうどなら抑制しない"""
        boxes = np.array([[0, 0, 10, 10], [0, 0, 10, 10]], dtype=np.float64)
        self.assertEqual(apply_nms(boxes, np.array([0.9, 0.8]), 1.0), [0, 1])

    def test_empty_input(self):
        self.assertEqual(apply_nms(np.zeros((0, 4)), np.zeros(0), 0.45), [])

    def test_survivors_pairwise_below_threshold(self):
        """生き残った組はすべて IoU ≤ 閾値"""
        rng = np.random.default_rng(7)
        boxes = np.column_stack([
            rng.uniform(0, 200, 60), rng.uniform(0, 200, 60),
            rng.uniform(5, 60, 60), rng.uniform(5, 60, 60)
        ])
        scores = rng.uniform(0, 1, 60)
        keep = apply_nms(boxes, scores, 0.3)

        for i, a in enumerate(keep):
            for b in keep[i + 1:]:
                self.assertLessEqual(calculate_iou(boxes[a], boxes[b]), 0.3)
        self.assertEqual(keep[0], int(np.argmax(scores)))


class TestTensorDecoder(unittest.TestCase):
    """TensorDecoder のテスト"""

    def setUp(self):
        self.decoder = TensorDecoder(DecoderConfig(confidence_threshold=0.25, nms_threshold=0.45))

    def test_center_to_top_left_conversion(self):
        """モデル空間の中心基準 → フレームの左上基準"""
        predictions = _predictions([(320, 320, 64, 32)], [0.9])
        detections = self.decoder.decode(predictions, 1280, 720)

        self.assertEqual(len(detections), 1)
        x, y, w, h = detections[0].bbox
        self.assertAlmostEqual(w, 128.0)
        self.assertAlmostEqual(h, 36.0)
        self.assertAlmostEqual(x, 640.0 - 64.0)
        self.assertAlmostEqual(y, 360.0 - 18.0)
        self.assertEqual(detections[0].model_bbox, (320.0, 320.0, 64.0, 32.0))

    def test_origin_clamped_to_frame(self):
        predictions = _predictions([(5, 5, 20, 30)], [0.9])
        x, y, w, h = self.decoder.decode(predictions, 640, 640)[0].bbox
        self.assertEqual((x, y), (0.0, 0.0))
        self.assertEqual((w, h), (20.0, 30.0))

    def test_confidence_threshold_is_strict(self):
        predictions = _predictions([(100, 100, 10, 10), (300, 300, 10, 10)], [0.25, 0.26])
        detections = self.decoder.decode(predictions, 640, 640)
        self.assertEqual(len(detections), 1)
        self.assertAlmostEqual(detections[0].score, 0.26, places=6)

    def test_nms_applied(self):
        predictions = _predictions([(10, 15, 20, 30), (12, 17, 20, 30)], [0.9, 0.8])
        detections = self.decoder.decode(predictions, 640, 640)
        self.assertEqual(len(detections), 1)
        self.assertAlmostEqual(detections[0].score, 0.9, places=6)

    def test_mask_coefficients_extracted(self):
        predictions = _predictions([(100, 100, 10, 10)], [0.9], num_coeffs=4, num_candidates=3)
        detections = self.decoder.decode(predictions, 640, 640)
        np.testing.assert_allclose(detections[0].coefficients, [0, 1, 2, 3])
        self.assertEqual(detections[0].candidate_index, 0)

    def test_batched_and_transposed_layouts(self):
        """[1, F, D] と明示指定した [1, D, F] は同じ結果になる"""
        predictions = _predictions([(100, 100, 20, 20)], [0.7], num_coeffs=8, num_candidates=50)
        batched = self.decoder.decode(predictions[np.newaxis], 640, 640)
        transposed = self.decoder.decode(predictions.T[np.newaxis], 640, 640, transposed=True)

        self.assertEqual(len(batched), 1)
        self.assertEqual(len(transposed), 1)
        self.assertEqual(batched[0].bbox, transposed[0].bbox)
        np.testing.assert_allclose(batched[0].coefficients, transposed[0].coefficients)

    def test_transposed_layout_from_config(self):
        predictions = _predictions([(100, 100, 20, 20)], [0.7], num_coeffs=8, num_candidates=50)
        decoder = TensorDecoder(DecoderConfig(transposed=True))
        detections = decoder.decode(predictions.T[np.newaxis], 640, 640)

        self.assertEqual(len(detections), 1)
        self.assertEqual(detections[0].bbox, (90.0, 90.0, 20.0, 20.0))

    def test_batched_with_fewer_candidates_than_features(self):
        """候補数が特徴量数より少なくても [1, F, D] として読む"""
        predictions = np.zeros((37, 3), dtype=np.float32)
        predictions[:4, 0] = (100, 100, 20, 30)
        predictions[4, 0] = 0.9

        squeezed = self.decoder.decode(predictions, 640, 640)
        batched = self.decoder.decode(predictions[np.newaxis], 640, 640)

        self.assertEqual(len(squeezed), 1)
        self.assertEqual(len(batched), 1)
        self.assertEqual(batched[0].bbox, squeezed[0].bbox)
        self.assertEqual(batched[0].candidate_index, 0)
        self.assertEqual(len(batched[0].coefficients), 32)

    def test_unreadable_feature_axis_is_transposed(self):
        """特徴量軸が矩形を持てない [1, D, F] は自動で転置する"""
        predictions = _predictions([(100, 100, 20, 20)], [0.7], num_coeffs=2, num_candidates=3)
        detections = self.decoder.decode(predictions.T[np.newaxis], 640, 640)

        self.assertEqual(len(detections), 1)
        self.assertEqual(detections[0].bbox, (90.0, 90.0, 20.0, 20.0))
        np.testing.assert_allclose(detections[0].coefficients, [0, 1])

    def test_flat_buffer_with_candidate_count(self):
        predictions = _predictions([(100, 100, 20, 20)], [0.7], num_coeffs=2, num_candidates=10)
        detections = self.decoder.decode(predictions.ravel(), 640, 640, num_candidates=10)
        self.assertEqual(len(detections), 1)
        self.assertEqual(len(detections[0].coefficients), 2)

    def test_malformed_inputs_return_empty(self):
        """不正な入力は例外ではなく空リスト"""
        self.assertEqual(self.decoder.decode(np.zeros((0,)), 640, 640), [])
        self.assertEqual(self.decoder.decode(np.zeros((4, 10)), 640, 640), [])
        self.assertEqual(self.decoder.decode(np.zeros((37, 0)), 640, 640), [])
        self.assertEqual(self.decoder.decode(np.zeros(11), 640, 640, num_candidates=5), [])
        self.assertEqual(self.decoder.decode(np.zeros((2, 37, 10)), 640, 640), [])

    def test_no_candidates_above_threshold(self):
        predictions = _predictions([(100, 100, 20, 20)], [0.1])
        self.assertEqual(self.decoder.decode(predictions, 640, 640), [])

    def test_performance_stats(self):
        predictions = _predictions([(100, 100, 20, 20)], [0.9])
        self.decoder.decode(predictions, 640, 640)
        self.decoder.decode(predictions, 640, 640)

        stats = self.decoder.get_performance_stats()
        self.assertEqual(stats['total_decodes'], 2)
        self.assertEqual(stats['detections_kept'], 2)
        self.assertGreaterEqual(stats['avg_decode_time_ms'], 0.0)

    def test_invalid_config_rejected(self):
        with self.assertRaises(ValueError):
            DecoderConfig(nms_threshold=1.5)


class TestMockOutputs(unittest.TestCase):
    """モックモデル出力のテスト"""

    def test_shapes(self):
        predictions, prototypes = create_mock_model_outputs(
            [(100, 100, 20, 30)], [0.9], num_candidates=100, num_coeffs=8, proto_size=(40, 32)
        )
        self.assertEqual(predictions.shape, (13, 100))
        self.assertEqual(prototypes.shape, (8, 40, 32))

    def test_roundtrip_through_convenience_function(self):
        predictions, _ = create_mock_model_outputs(
            [(100, 100, 20, 30), (400, 400, 20, 30)], [0.9, 0.6], num_candidates=100
        )
        detections = decode_detections(predictions, 640, 640)
        self.assertEqual([round(d.score, 3) for d in detections], [0.9, 0.6])
        self.assertEqual(detections[0].bbox, (90.0, 85.0, 20.0, 30.0))


if __name__ == '__main__':
    unittest.main()
