#!/usr/bin/env python3
"""
pytest共通設定とフィクスチャ

テスト実行時の共通設定、モック出力・モック手のフィクスチャ、
拡張アサーションを提供します。
"""

import pytest
import logging
import sys
import os
import tempfile
import numpy as np
from typing import Generator, Optional
from dataclasses import dataclass

# nailtrackモジュールのパス追加
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from nailtrack import setup_logging, get_logger
from nailtrack.data_types import HandednessType, HandLandmark, LandmarkSet
from nailtrack.detection.landmarks import create_mock_landmark_set
from nailtrack.segmentation.decoder import create_mock_model_outputs

# モデル入力と同じ解像度のフレームなら bbox は 1:1 で写る
FRAME_SIZE = 640

# =============================================================================
# テストロギング設定
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """テスト全体のロギング設定"""
    setup_logging(level="DEBUG")
    logger = get_logger("test")
    logger.info("=== テストセッション開始 ===")
    yield
    logger.info("=== テストセッション終了 ===")


@pytest.fixture
def test_logger():
    """テスト用ロガー"""
    return get_logger("test")


# =============================================================================
# パフォーマンス計測
# =============================================================================

@dataclass
class PerformanceMeasurement:
    """パフォーマンス計測結果"""
    execution_time_ms: float
    memory_usage_mb: float
    operations_per_second: Optional[float] = None

    def log_results(self, logger: logging.Logger, test_name: str):
        """結果をログ出力"""
        logger.info(f"=== {test_name} パフォーマンス結果 ===")
        logger.info(f"実行時間: {self.execution_time_ms:.3f}ms")
        logger.info(f"メモリ使用量: {self.memory_usage_mb:.2f}MB")
        if self.operations_per_second:
            logger.info(f"処理速度: {self.operations_per_second:.1f} ops/sec")


@pytest.fixture
def performance_tracker():
    """パフォーマンス計測ユーティリティ"""
    import time
    import psutil
    import gc

    class PerformanceTracker:
        def __init__(self):
            self.start_time = None
            self.start_memory = None

        def start(self):
            """計測開始"""
            gc.collect()
            self.start_time = time.perf_counter()
            self.start_memory = psutil.Process().memory_info().rss / 1024 / 1024

        def stop(self, operations_count: int = None) -> PerformanceMeasurement:
            """計測終了"""
            end_time = time.perf_counter()
            end_memory = psutil.Process().memory_info().rss / 1024 / 1024

            execution_time_ms = (end_time - self.start_time) * 1000
            ops_per_sec = None
            if operations_count and execution_time_ms > 0:
                ops_per_sec = operations_count / (execution_time_ms / 1000)

            return PerformanceMeasurement(
                execution_time_ms=execution_time_ms,
                memory_usage_mb=end_memory - self.start_memory,
                operations_per_second=ops_per_sec
            )

    return PerformanceTracker()


# =============================================================================
# テストデータフィクスチャ
# =============================================================================

@pytest.fixture
def right_hand() -> LandmarkSet:
    """画像中央の右手（指先が上向き）"""
    return create_mock_landmark_set(hand_id="right", handedness=HandednessType.RIGHT)


@pytest.fixture
def left_hand() -> LandmarkSet:
    """画像中央の左手"""
    return create_mock_landmark_set(hand_id="left", handedness=HandednessType.LEFT)


@pytest.fixture
def nail_outputs_for_hand():
    """手の指先にbboxを置いたモックモデル出力の生成器"""
    def generate(hand: LandmarkSet, nail_size=(14.0, 20.0), score: float = 0.8,
                 tips=(4, 8, 12, 16, 20), num_candidates: int = 400):
        boxes = []
        for tip in tips:
            fx, fy = hand.pixel_position(tip, FRAME_SIZE, FRAME_SIZE)
            boxes.append((fx, fy, nail_size[0], nail_size[1]))
        return create_mock_model_outputs(boxes, [score] * len(boxes), num_candidates=num_candidates)

    return generate


def make_single_point_hand(hand_id: str, tip_index: int, pixel: tuple,
                           frame_size: int = FRAME_SIZE) -> LandmarkSet:
    """指定指先だけ位置を持ち、他の点がすべて同じ位置にある手"""
    landmarks = [HandLandmark(x=0.95, y=0.95, z=0.0) for _ in range(21)]
    landmarks[tip_index] = HandLandmark(x=pixel[0] / frame_size, y=pixel[1] / frame_size, z=0.0)
    return LandmarkSet(id=hand_id, landmarks=landmarks, handedness=HandednessType.RIGHT, confidence=0.9)


@pytest.fixture
def temp_directory() -> Generator[str, None, None]:
    """一時ディレクトリ"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield temp_dir


# =============================================================================
# テストスイート選択
# =============================================================================

def pytest_configure(config):
    """pytest設定時に実行"""
    config.addinivalue_line(
        "markers", "performance: 処理時間を計測するテスト"
    )
    config.addinivalue_line(
        "markers", "integration: パイプライン全体を通すテスト"
    )


def pytest_collection_modifyitems(config, items):
    """テスト収集時の自動マーカー付与"""
    for item in items:
        if "performance" in item.nodeid:
            item.add_marker(pytest.mark.performance)
        elif "pipeline" in item.nodeid:
            item.add_marker(pytest.mark.integration)


# =============================================================================
# アサーション拡張
# =============================================================================

class TestAssertions:
    """拡張アサーション関数"""

    __test__ = False

    @staticmethod
    def assert_orthonormal(matrix: np.ndarray, tolerance: float = 1e-9):
        """列が正規直交であることのアサーション"""
        gram = matrix.T @ matrix
        assert np.allclose(gram, np.eye(3), atol=tolerance), f"正規直交でない: {gram}"

    @staticmethod
    def assert_within_tolerance(actual: float, expected: float, tolerance: float, description: str = "値"):
        """許容誤差内アサーション"""
        diff = abs(actual - expected)
        assert diff <= tolerance, (
            f"{description}が許容誤差を超過: |{actual} - {expected}| = {diff} > {tolerance}"
        )

    @staticmethod
    def assert_angle_close(actual: float, expected: float, tolerance: float):
        """±πの折り返しを考慮した角度比較"""
        diff = np.arctan2(np.sin(actual - expected), np.cos(actual - expected))
        assert abs(diff) <= tolerance, f"角度差 {diff} > {tolerance}"


@pytest.fixture
def assert_helper():
    """アサーション拡張のヘルパー"""
    return TestAssertions()
