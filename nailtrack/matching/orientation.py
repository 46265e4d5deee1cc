#!/usr/bin/env python3
"""
爪の3D姿勢推定

指先近傍の関節から長さ軸、手のひらの安定した3点から法線軸を作り、
Gram-Schmidt 補正で右手系の正規直交基底を得ます。
ポリゴンをその基底へ射影して幅・長さ・2D表示角度を求めます。

指を伸ばしきると指上の3関節がほぼ一直線になり外積が不安定になるため、
法線は指先付近ではなく手首・人差し指付け根・小指付け根から求める。
"""

import dataclasses
from typing import List, Optional, Sequence, Tuple
import numpy as np

from .. import get_logger
from ..config import OrientationConfig
from ..constants import DISTANCE_EPSILON
from ..data_types import (
    HandednessType, LandmarkSet, NailMatch, OrientationBasis, BBox
)
from ..detection.landmarks import finger_joint_indices

logger = get_logger(__name__)


def _normalize(vector: np.ndarray) -> np.ndarray:
    """単位ベクトル化。長さが0なら NaN ベクトルを返す"""
    norm = np.linalg.norm(vector)
    if not np.isfinite(norm) or norm <= DISTANCE_EPSILON:
        return np.full(3, np.nan)
    return vector / norm


def build_orientation_basis(
    points: np.ndarray,
    tip_index: int,
    proximal_index: int,
    base_index: int,
    spread_indices: Sequence[int],
    mirrored: bool = False
) -> Optional[OrientationBasis]:
    """
    ランドマーク列から爪の正規直交基底を構築
    
    Args:
        points: (N, 3) ランドマーク座標
        tip_index: 指先インデックス
        proximal_index: 長さ軸の始点となる関節
        base_index: 法線計算の基準点（手首）
        spread_indices: 法線計算の2点（人差し指・小指の付け根）
        mirrored: 左手なら True（同じ巻き順で法線の符号が反転するため）
        
    Returns:
        OrientationBasis。点の一致・共線で成分が非有限になれば None
    """
    points = np.asarray(points, dtype=np.float64)
    required = (tip_index, proximal_index, base_index, *spread_indices)
    if any(i < 0 or i >= len(points) for i in required):
        return None
    
    # 1. 長さ軸: 近位関節 → 指先
    z_axis = _normalize(points[tip_index] - points[proximal_index])
    
    # 2. 法線軸: 手首から2つの付け根へのベクトルの外積
    base = points[base_index]
    y_axis = _normalize(np.cross(points[spread_indices[0]] - base, points[spread_indices[1]] - base))
    if mirrored:
        y_axis = -y_axis
    
    # 3. 幅軸と長さ軸の再計算（直交化）
    x_axis = _normalize(np.cross(y_axis, z_axis))
    z_axis = _normalize(np.cross(x_axis, y_axis))
    
    basis = OrientationBasis(x_axis=x_axis, y_axis=y_axis, z_axis=z_axis)
    if not basis.is_finite():
        return None
    return basis


def extract_dimensions(
    polygon: np.ndarray,
    centroid: Tuple[float, float],
    basis: OrientationBasis,
    bbox: Optional[BBox] = None
) -> Tuple[float, float, float]:
    """
    ポリゴンを基底の平面成分へ射影して寸法を求める
    
    Args:
        polygon: (N, 2) ピクセル座標
        centroid: ポリゴン重心
        basis: 正規直交基底
        bbox: 射影が退化した場合に使う矩形
        
    Returns:
        (幅, 長さ, 角度[rad])。角度は画像座標系（y下向き）での長さ軸の向き
    """
    angle = float(np.arctan2(basis.z_axis[1], basis.z_axis[0]))
    
    x_planar = basis.x_axis[:2]
    z_planar = basis.z_axis[:2]
    x_norm = np.linalg.norm(x_planar)
    z_norm = np.linalg.norm(z_planar)
    
    polygon = np.asarray(polygon, dtype=np.float64).reshape(-1, 2)
    if x_norm <= DISTANCE_EPSILON or z_norm <= DISTANCE_EPSILON or len(polygon) == 0:
        # 軸がカメラ方向を向いている場合は bbox から近似
        if bbox is None:
            return (0.0, 0.0, angle)
        _, _, bbox_w, bbox_h = bbox
        return (float(min(bbox_w, bbox_h)), float(max(bbox_w, bbox_h)), angle)
    
    relative = polygon - np.asarray(centroid, dtype=np.float64)
    across = relative @ (x_planar / x_norm)
    along = relative @ (z_planar / z_norm)
    
    width = float(across.max() - across.min())
    height = float(along.max() - along.min())
    return (width, height, angle)


class OrientationEstimator:
    """マッチごとの姿勢・寸法推定"""
    
    def __init__(self, config: Optional[OrientationConfig] = None):
        """
        初期化
        
        Args:
            config: 姿勢推定設定（長さ軸の近位関節・手のひら基準点）
        """
        self.config = config or OrientationConfig()
        
        self.stats = {
            'total_estimates': 0,
            'rejected_geometry': 0
        }
    
    def build_basis(
        self,
        landmark_set: LandmarkSet,
        fingertip_index: int,
        frame_width: int = 1,
        frame_height: int = 1
    ) -> Optional[OrientationBasis]:
        """LandmarkSet と指先から基底を構築"""
        joints = finger_joint_indices(fingertip_index)
        if joints is None:
            logger.debug(f"Landmark {fingertip_index} is not a fingertip, no length axis")
            return None
        
        points = landmark_set.to_array()
        if len(points) == 0:
            return None
        
        if self.config.pixel_space:
            # z は MediaPipe では x とほぼ同じスケール
            points = points * np.array([frame_width, frame_height, frame_width], dtype=np.float64)
        
        return build_orientation_basis(
            points,
            tip_index=fingertip_index,
            proximal_index=joints[self.config.proximal_joint],
            base_index=self.config.palm_base_index,
            spread_indices=self.config.palm_spread_indices,
            mirrored=landmark_set.handedness == HandednessType.LEFT
        )
    
    def estimate(
        self,
        match: NailMatch,
        landmark_set: LandmarkSet,
        frame_width: int = 1,
        frame_height: int = 1
    ) -> NailMatch:
        """
        マッチに基底・幅・長さ・角度を付与
        
        Returns:
            姿勢付きの NailMatch。幾何が退化していれば姿勢なしのまま返す
        """
        self.stats['total_estimates'] += 1
        
        basis = self.build_basis(landmark_set, match.fingertip_index, frame_width, frame_height)
        if basis is None:
            self.stats['rejected_geometry'] += 1
            logger.debug(f"Degenerate geometry for {match.hand_id}/{match.fingertip_index}, orientation unset")
            return dataclasses.replace(match, orientation=None, width=None, height=None, angle=None, raw_angle=None)
        
        width, height, angle = extract_dimensions(
            match.detection.polygon, match.centroid, basis, match.detection.bbox
        )
        return dataclasses.replace(
            match,
            orientation=basis,
            width=width,
            height=height,
            angle=angle,
            raw_angle=angle
        )
    
    def estimate_all(
        self,
        matches: List[NailMatch],
        landmark_sets: List[LandmarkSet],
        frame_width: int = 1,
        frame_height: int = 1
    ) -> List[NailMatch]:
        """全マッチを推定（失敗は個別に扱い、バッチ全体は止めない）"""
        results = []
        for match in matches:
            if not 0 <= match.hand_index < len(landmark_sets):
                logger.warning(f"Match refers to missing hand index {match.hand_index}")
                results.append(match)
                continue
            results.append(self.estimate(match, landmark_sets[match.hand_index], frame_width, frame_height))
        return results
    
    def get_stats(self):
        """統計情報を取得"""
        return self.stats.copy()
