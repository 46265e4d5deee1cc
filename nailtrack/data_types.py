#!/usr/bin/env python3
"""
共通型定義

デコード・マスク復元・指先マッチング・姿勢推定の各段で受け渡される
データ構造を一元管理し、モジュール間の循環依存を解消します。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple, Optional
import numpy as np

from .constants import FINGERTIP_INDICES, FINGER_NAMES

# 型エイリアス
BBox = Tuple[float, float, float, float]  # (x, y, width, height)
MatchKey = Tuple[str, int]                # (hand_id, fingertip_index)


# =============================================================================
# 手ランドマーク型定義
# =============================================================================

class HandednessType(Enum):
    """手の種類"""
    LEFT = "Left"
    RIGHT = "Right"
    UNKNOWN = "Unknown"
    
    @classmethod
    def from_label(cls, label: str) -> 'HandednessType':
        """MediaPipe のラベル文字列から変換"""
        for member in cls:
            if member.value.lower() == str(label).lower():
                return member
        return cls.UNKNOWN


@dataclass
class HandLandmark:
    """手のランドマーク座標"""
    x: float  # 0-1の正規化座標
    y: float  # 0-1の正規化座標
    z: float  # 深度情報（相対値）
    visibility: float = 1.0


@dataclass
class LandmarkSet:
    """1つの手のランドマーク列（外部のトラッカーから毎サイクル供給される）"""
    id: str  # 平滑化キーに使う識別子
    landmarks: List[HandLandmark]
    handedness: HandednessType
    confidence: float
    timestamp_ms: float = 0.0
    
    def to_array(self) -> np.ndarray:
        """(N, 3) の正規化座標配列"""
        if not self.landmarks:
            return np.zeros((0, 3), dtype=np.float64)
        return np.array([[lm.x, lm.y, lm.z] for lm in self.landmarks], dtype=np.float64)
    
    def pixel_position(self, index: int, frame_width: int, frame_height: int) -> Tuple[float, float]:
        """ランドマークのフレーム上ピクセル座標"""
        lm = self.landmarks[index]
        return (lm.x * frame_width, lm.y * frame_height)
    
    def has_landmark(self, index: int) -> bool:
        return 0 <= index < len(self.landmarks)


# =============================================================================
# 検出型定義
# =============================================================================

@dataclass
class RawDetection:
    """デコード直後の候補（NMS通過済み・マスク未復元）"""
    score: float
    bbox: BBox                 # ソースフレームのピクセル座標、左上基準
    model_bbox: BBox           # モデル入力空間の (cx, cy, w, h)
    coefficients: np.ndarray   # マスク係数 (M,)
    candidate_index: int = -1


class PolygonSource(Enum):
    """ポリゴンの生成元"""
    MASK = "mask"          # プロトタイプ合成マスクの輪郭
    FALLBACK = "fallback"  # バウンディングボックス由来の角丸矩形


@dataclass
class Detection:
    """爪検出結果"""
    score: float
    bbox: BBox
    polygon: np.ndarray  # (N, 2) ソースフレームのピクセル座標
    polygon_source: PolygonSource = PolygonSource.FALLBACK
    mask: Optional[np.ndarray] = None  # (H, W) 確率マップ
    
    @property
    def centroid(self) -> Tuple[float, float]:
        """ポリゴン頂点の平均（ポリゴンが無ければbbox中心）"""
        if self.polygon is not None and len(self.polygon) > 0:
            center = np.mean(np.asarray(self.polygon, dtype=np.float64), axis=0)
            return (float(center[0]), float(center[1]))
        x, y, w, h = self.bbox
        return (x + w / 2.0, y + h / 2.0)


# =============================================================================
# マッチング・姿勢型定義
# =============================================================================

@dataclass
class OrientationBasis:
    """爪の右手系正規直交基底（画像座標系: x右, y下）"""
    x_axis: np.ndarray  # 幅方向
    y_axis: np.ndarray  # 法線方向（爪表面から外向き）
    z_axis: np.ndarray  # 長さ方向（指先向き）
    
    def as_matrix(self) -> np.ndarray:
        """列ベクトルに基底を並べた 3x3 行列"""
        return np.column_stack([self.x_axis, self.y_axis, self.z_axis])
    
    def is_finite(self) -> bool:
        return bool(
            np.all(np.isfinite(self.x_axis))
            and np.all(np.isfinite(self.y_axis))
            and np.all(np.isfinite(self.z_axis))
        )


@dataclass
class NailMatch:
    """爪検出と指先の対応"""
    detection: Detection
    detection_index: int
    hand_id: str
    hand_index: int
    handedness: HandednessType
    fingertip_index: int
    fingertip_position: Tuple[float, float]
    centroid: Tuple[float, float]
    match_score: float
    distance: float = 0.0
    
    # 姿勢推定で付与される
    orientation: Optional[OrientationBasis] = None
    width: Optional[float] = None
    height: Optional[float] = None
    angle: Optional[float] = None
    raw_angle: Optional[float] = None
    
    @property
    def key(self) -> MatchKey:
        """(手ID, 指先インデックス)"""
        return (self.hand_id, self.fingertip_index)
    
    @property
    def confidence(self) -> float:
        """マッチスコアをそのまま信頼度として扱う"""
        return self.match_score
    
    @property
    def has_orientation(self) -> bool:
        return self.orientation is not None
    
    @property
    def finger_name(self) -> str:
        if self.fingertip_index in FINGERTIP_INDICES:
            return FINGER_NAMES[FINGERTIP_INDICES.index(self.fingertip_index)]
        return "Unknown"


@dataclass
class MatchCandidate:
    """割り当て前の (検出, 手, 指先) 候補"""
    detection_index: int
    hand_index: int
    fingertip_index: int
    key: MatchKey
    distance: float
    match_score: float
    fingertip_position: Tuple[float, float] = field(default=(0.0, 0.0))
