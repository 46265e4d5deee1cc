#!/usr/bin/env python3
"""
共通定数・設定値

デコード閾値・マスク処理・指先マッチング・平滑化で使用される
定数や既定値を一元管理します。
"""

from typing import Final, Tuple

# =============================================================================
# 数値精度・許容誤差
# =============================================================================

DISTANCE_EPSILON: Final[float] = 1e-9

# =============================================================================
# YOLOセグメンテーション出力関連
# =============================================================================

# モデル入力解像度（ピクセル）
DEFAULT_MODEL_INPUT_WIDTH: Final[int] = 640
DEFAULT_MODEL_INPUT_HEIGHT: Final[int] = 640

# 特徴量レイアウト: [cx, cy, w, h, score, mask_coeffs...]
BBOX_FEATURE_COUNT: Final[int] = 4
SCORE_FEATURE_INDEX: Final[int] = 4
MASK_COEFF_OFFSET: Final[int] = 5

# 検出閾値
DEFAULT_CONFIDENCE_THRESHOLD: Final[float] = 0.25
DEFAULT_NMS_THRESHOLD: Final[float] = 0.45

# =============================================================================
# マスク・輪郭処理関連
# =============================================================================

DEFAULT_MASK_THRESHOLD: Final[float] = 0.5
DEFAULT_SIMPLIFY_TOLERANCE: Final[float] = 2.0  # px
MIN_POLYGON_POINTS: Final[int] = 3

# 輪郭が取れない場合の角丸矩形
FALLBACK_CORNER_RATIO: Final[float] = 0.25        # min(w, h) に対する上側角半径
FALLBACK_BOTTOM_CORNER_RATIO: Final[float] = 0.5  # 上側角半径に対する下側角半径
FALLBACK_CORNER_SEGMENTS: Final[int] = 4

# =============================================================================
# 手ランドマーク（MediaPipe Hands）関連
# =============================================================================

HAND_LANDMARK_COUNT: Final[int] = 21
WRIST_INDEX: Final[int] = 0
INDEX_MCP_INDEX: Final[int] = 5
PINKY_MCP_INDEX: Final[int] = 17

FINGERTIP_INDICES: Final[Tuple[int, ...]] = (4, 8, 12, 16, 20)
FINGER_NAMES: Final[Tuple[str, ...]] = ("Thumb", "Index", "Middle", "Ring", "Pinky")

HAND_CONNECTIONS: Final[Tuple[Tuple[int, int], ...]] = (
    (0, 1), (1, 2), (2, 3), (3, 4),         # 親指
    (0, 5), (5, 6), (6, 7), (7, 8),         # 人差し指
    (0, 9), (9, 10), (10, 11), (11, 12),    # 中指
    (0, 13), (13, 14), (14, 15), (15, 16),  # 薬指
    (0, 17), (17, 18), (18, 19), (19, 20),  # 小指
    (5, 9), (9, 13), (13, 17),              # 手のひら
)

# =============================================================================
# マッチング・平滑化関連
# =============================================================================

DEFAULT_SEARCH_RADIUS_RATIO: Final[float] = 0.15
DEFAULT_DISTANCE_WEIGHT: Final[float] = 0.7
DEFAULT_CONFIDENCE_WEIGHT: Final[float] = 0.3

DEFAULT_SMOOTHING_WINDOW: Final[int] = 5

# =============================================================================
# デバッグ描画関連
# =============================================================================

DEBUG_POINT_SIZE: Final[int] = 4
DEBUG_LINE_THICKNESS: Final[int] = 2
DEFAULT_TINT_ALPHA: Final[float] = 0.7

# 色定数（BGR形式）
COLOR_GREEN: Final[tuple] = (0, 255, 0)
COLOR_BLUE: Final[tuple] = (255, 0, 0)
COLOR_YELLOW: Final[tuple] = (0, 255, 255)
COLOR_MATCH: Final[tuple] = (136, 255, 0)
COLOR_WHITE: Final[tuple] = (255, 255, 255)
COLOR_BLACK: Final[tuple] = (0, 0, 0)
