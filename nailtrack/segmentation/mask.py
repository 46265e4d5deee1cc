#!/usr/bin/env python3
"""
セグメンテーションマスク復元・輪郭抽出

マスク係数と共有プロトタイプ [M, H, W] の線形結合に sigmoid を掛けて
物体ごとの確率マップを作り、marching squares でサブピクセル精度の境界点を
取り出してポリゴン化します。
"""

from typing import List, Optional, Tuple
import numpy as np
from scipy.special import expit

from .. import get_logger
from ..config import MaskConfig
from ..constants import MIN_POLYGON_POINTS
from ..data_types import RawDetection, Detection, PolygonSource, BBox

logger = get_logger(__name__)


# セルの辺: 0=上, 1=右, 2=下, 3=左
# ケース番号のビット: 左上=8, 右上=4, 右下=2, 左下=1
MARCHING_SQUARES_SEGMENTS: Tuple[Tuple[Tuple[int, int], ...], ...] = (
    (),                  # 0
    ((3, 2),),           # 1
    ((2, 1),),           # 2
    ((3, 1),),           # 3
    ((0, 1),),           # 4
    ((3, 0), (2, 1)),    # 5 鞍点
    ((0, 2),),           # 6
    ((3, 0),),           # 7
    ((3, 0),),           # 8
    ((0, 2),),           # 9
    ((3, 2), (0, 1)),    # 10 鞍点
    ((0, 1),),           # 11
    ((3, 1),),           # 12
    ((2, 1),),           # 13
    ((3, 2),),           # 14
    (),                  # 15
)


def compute_mask_probabilities(coefficients: np.ndarray, prototypes: np.ndarray) -> np.ndarray:
    """
    mask(y, x) = sigmoid(Σ_m coeff_m · prototype[m, y, x])
    
    Args:
        coefficients: (M,) マスク係数
        prototypes: (M, H, W) プロトタイプ
        
    Returns:
        (H, W) float64 確率マップ
    """
    coeffs = np.asarray(coefficients, dtype=np.float64).reshape(-1)
    protos = np.asarray(prototypes, dtype=np.float64)
    logits = np.tensordot(coeffs, protos, axes=(0, 0))
    return expit(logits)


def marching_squares_points(field: np.ndarray, threshold: float = 0.5) -> np.ndarray:
    """
    marching squares による境界点抽出
    
    2x2 セルごとに4隅を閾値で分類し、16通りの構成に従って
    辺上の線形補間交点を出力する。グリッド外周は閾値未満として扱うため、
    端に接する形状も閉じた輪郭になる。
    
    Args:
        field: (H, W) スカラー場
        threshold: 境界閾値
        
    Returns:
        (K, 2) グリッド座標 (x, y) の点群。x ∈ [-0.5, W-0.5], y ∈ [-0.5, H-0.5]
    """
    field = np.asarray(field, dtype=np.float64)
    if field.ndim != 2 or field.shape[0] == 0 or field.shape[1] == 0:
        return np.zeros((0, 2), dtype=np.float64)
    
    height, width = field.shape
    # 外周は閾値未満の値で囲む
    padded = np.pad(field, 1, mode='constant', constant_values=min(0.0, threshold - 1.0))
    inside = padded > threshold
    
    v_tl = padded[:-1, :-1]
    v_tr = padded[:-1, 1:]
    v_br = padded[1:, 1:]
    v_bl = padded[1:, :-1]
    
    cases = (
        inside[:-1, :-1].astype(np.uint8) * 8
        + inside[:-1, 1:].astype(np.uint8) * 4
        + inside[1:, 1:].astype(np.uint8) * 2
        + inside[1:, :-1].astype(np.uint8) * 1
    )
    
    rows, cols = np.indices(cases.shape, dtype=np.float64)
    
    # 交差しない辺では使われないので 0 除算は無視してよい
    with np.errstate(divide='ignore', invalid='ignore'):
        t_top = (threshold - v_tl) / (v_tr - v_tl)
        t_right = (threshold - v_tr) / (v_br - v_tr)
        t_bottom = (threshold - v_bl) / (v_br - v_bl)
        t_left = (threshold - v_tl) / (v_bl - v_tl)
    
    edge_x = (cols + t_top, cols + 1.0, cols + t_bottom, cols)
    edge_y = (rows, rows + t_right, rows + 1.0, rows + t_left)
    
    points = []
    for case in range(1, 15):
        cells = cases == case
        if not np.any(cells):
            continue
        for edge_a, edge_b in MARCHING_SQUARES_SEGMENTS[case]:
            for edge in (edge_a, edge_b):
                points.append(np.column_stack([edge_x[edge][cells], edge_y[edge][cells]]))
    
    if not points:
        return np.zeros((0, 2), dtype=np.float64)
    
    # パディング分を戻す
    result = np.vstack(points) - 1.0
    result[:, 0] = np.clip(result[:, 0], -0.5, width - 0.5)
    result[:, 1] = np.clip(result[:, 1], -0.5, height - 0.5)
    return result


def grid_to_frame(points: np.ndarray, grid_shape: Tuple[int, int], bbox: BBox) -> np.ndarray:
    """グリッド座標をbboxの線形範囲でソースフレームのピクセル座標へ写像"""
    height, width = grid_shape
    x, y, w, h = bbox
    mapped = np.empty_like(points, dtype=np.float64)
    mapped[:, 0] = x + (points[:, 0] + 0.5) / width * w
    mapped[:, 1] = y + (points[:, 1] + 0.5) / height * h
    return mapped


def polygon_centroid(points: np.ndarray) -> np.ndarray:
    """頂点平均"""
    return np.mean(np.asarray(points, dtype=np.float64), axis=0)


def sort_points_by_angle(points: np.ndarray) -> np.ndarray:
    """重心まわりの偏角で点群を並べ、単純多角形にする（星形領域前提）"""
    points = np.asarray(points, dtype=np.float64)
    if len(points) <= 2:
        return points
    center = polygon_centroid(points)
    angles = np.arctan2(points[:, 1] - center[1], points[:, 0] - center[0])
    return points[np.argsort(angles, kind='stable')]


def simplify_polygon(points: np.ndarray, tolerance: float) -> np.ndarray:
    """
    直前に採用した点から tolerance 以内の点を落とす
    
    閉じ側（末尾と先頭）も同じ距離条件を満たすように末尾を削る。
    """
    points = np.asarray(points, dtype=np.float64)
    if len(points) <= 2:
        return points
    
    kept = [points[0]]
    for point in points[1:]:
        if np.hypot(point[0] - kept[-1][0], point[1] - kept[-1][1]) > tolerance:
            kept.append(point)
    
    while len(kept) > MIN_POLYGON_POINTS and \
            np.hypot(kept[-1][0] - kept[0][0], kept[-1][1] - kept[0][1]) <= tolerance:
        kept.pop()
    
    return np.array(kept, dtype=np.float64)


def rounded_rect_polygon(
    bbox: BBox,
    corner_ratio: float = 0.25,
    bottom_ratio: float = 0.5,
    segments: int = 4
) -> np.ndarray:
    """
    bboxのみから作る爪形の角丸矩形ポリゴン
    
    上側の角半径は min(w, h) * corner_ratio、下側はその bottom_ratio 倍。
    画像座標（y下向き）で左上 → 右上 → 右下 → 左下の順に頂点を並べる。
    """
    x, y, w, h = (float(v) for v in bbox)
    w = max(w, 0.0)
    h = max(h, 0.0)
    r_top = min(w, h) * corner_ratio
    r_bottom = r_top * bottom_ratio
    
    corners = (
        (x + r_top, y + r_top, r_top, np.pi),                            # 左上
        (x + w - r_top, y + r_top, r_top, 1.5 * np.pi),                  # 右上
        (x + w - r_bottom, y + h - r_bottom, r_bottom, 0.0),             # 右下
        (x + r_bottom, y + h - r_bottom, r_bottom, 0.5 * np.pi),         # 左下
    )
    
    points = []
    for cx, cy, radius, start in corners:
        angles = start + np.linspace(0.0, 0.5 * np.pi, segments + 1)
        points.append(np.column_stack([cx + radius * np.cos(angles), cy + radius * np.sin(angles)]))
    
    return np.vstack(points)


class MaskReconstructor:
    """マスク係数からの爪ポリゴン復元"""
    
    def __init__(self, config: Optional[MaskConfig] = None):
        """
        初期化
        
        Args:
            config: マスク設定（閾値・簡略化許容距離・フォールバック形状）
        """
        self.config = config or MaskConfig()
        
        self.stats = {
            'total_reconstructed': 0,
            'mask_polygons': 0,
            'fallback_polygons': 0
        }
    
    def reconstruct(self, raw: RawDetection, prototypes: Optional[np.ndarray]) -> Detection:
        """
        1検出分のマスクとポリゴンを復元
        
        Args:
            raw: デコード済み候補
            prototypes: (M, H, W) もしくは (1, M, H, W) のプロトタイプ。None可
            
        Returns:
            ポリゴン付き Detection（復元できなければ角丸矩形）
        """
        self.stats['total_reconstructed'] += 1
        
        protos = self._normalize_prototypes(prototypes)
        coeffs = np.asarray(raw.coefficients, dtype=np.float64).reshape(-1)
        
        if protos is None or coeffs.size == 0:
            return self._fallback(raw)
        
        if protos.shape[0] != coeffs.size:
            logger.warning(
                f"Mask coefficient count {coeffs.size} does not match "
                f"prototype channels {protos.shape[0]}"
            )
            return self._fallback(raw)
        
        probabilities = compute_mask_probabilities(coeffs, protos)
        grid_points = marching_squares_points(probabilities, self.config.mask_threshold)
        
        if len(grid_points) == 0:
            logger.debug(f"No mask boundary for candidate {raw.candidate_index}")
            return self._fallback(raw, probabilities)
        
        frame_points = grid_to_frame(grid_points, probabilities.shape, raw.bbox)
        polygon = simplify_polygon(sort_points_by_angle(frame_points), self.config.simplify_tolerance)
        
        if len(polygon) < MIN_POLYGON_POINTS:
            logger.debug(f"Mask polygon collapsed to {len(polygon)} points, using fallback")
            return self._fallback(raw, probabilities)
        
        self.stats['mask_polygons'] += 1
        return Detection(
            score=raw.score,
            bbox=raw.bbox,
            polygon=polygon,
            polygon_source=PolygonSource.MASK,
            mask=probabilities if self.config.keep_probability_mask else None
        )
    
    def reconstruct_all(
        self,
        raw_detections: List[RawDetection],
        prototypes: Optional[np.ndarray]
    ) -> List[Detection]:
        """全候補を順序を保ったまま復元"""
        return [self.reconstruct(raw, prototypes) for raw in raw_detections]
    
    def _normalize_prototypes(self, prototypes: Optional[np.ndarray]) -> Optional[np.ndarray]:
        """(M, H, W) へ揃える。使えない場合は None"""
        if prototypes is None:
            return None
        protos = np.asarray(prototypes)
        if protos.ndim == 4 and protos.shape[0] == 1:
            protos = protos[0]
        if protos.ndim != 3:
            logger.warning(f"Unexpected prototype shape: {protos.shape}")
            return None
        if protos.shape[0] == 0 or protos.shape[1] == 0 or protos.shape[2] == 0:
            logger.debug(f"Degenerate prototype grid: {protos.shape}")
            return None
        return protos
    
    def _fallback(self, raw: RawDetection, probabilities: Optional[np.ndarray] = None) -> Detection:
        """bboxから角丸矩形ポリゴンを作る"""
        self.stats['fallback_polygons'] += 1
        polygon = rounded_rect_polygon(
            raw.bbox,
            corner_ratio=self.config.fallback_corner_ratio,
            bottom_ratio=self.config.fallback_bottom_corner_ratio,
            segments=self.config.fallback_corner_segments
        )
        return Detection(
            score=raw.score,
            bbox=raw.bbox,
            polygon=polygon,
            polygon_source=PolygonSource.FALLBACK,
            mask=probabilities if self.config.keep_probability_mask else None
        )
    
    def get_stats(self):
        """統計情報を取得"""
        return self.stats.copy()
    
    def reset_stats(self):
        """統計情報をリセット"""
        for key in self.stats:
            self.stats[key] = 0
