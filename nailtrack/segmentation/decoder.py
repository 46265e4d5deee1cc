#!/usr/bin/env python3
"""
YOLOv8-seg 検出テンソルデコーダ

[特徴量, 候補] レイアウト（列優先: 特徴量ストライド = 候補数）の生テンソルを
スコア付き矩形候補へ変換し、NMSで重複を排除します。
特徴量は [cx, cy, w, h, score, mask_coeff_0 .. mask_coeff_{M-1}]。
"""

import time
from typing import List, Optional, Tuple, Dict, Any
import numpy as np

from .. import get_logger
from ..config import DecoderConfig
from ..constants import BBOX_FEATURE_COUNT, SCORE_FEATURE_INDEX, MASK_COEFF_OFFSET
from ..data_types import RawDetection, BBox

logger = get_logger(__name__)


def calculate_iou(box1: BBox, box2: BBox) -> float:
    """
    2つの左上基準矩形 (x, y, w, h) の IoU
    
    どちらかの面積が0なら0を返す。
    """
    x1, y1, w1, h1 = box1
    x2, y2, w2, h2 = box2
    
    area1 = w1 * h1
    area2 = w2 * h2
    if area1 <= 0 or area2 <= 0:
        return 0.0
    
    inter_w = max(0.0, min(x1 + w1, x2 + w2) - max(x1, x2))
    inter_h = max(0.0, min(y1 + h1, y2 + h2) - max(y1, y2))
    intersection = inter_w * inter_h
    union = area1 + area2 - intersection
    
    return float(intersection / union) if union > 0 else 0.0


def _iou_one_to_many(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """1つの矩形と複数矩形 (K, 4) の IoU をまとめて計算"""
    x, y, w, h = box
    area = w * h
    areas = boxes[:, 2] * boxes[:, 3]
    
    inter_w = np.maximum(0.0, np.minimum(x + w, boxes[:, 0] + boxes[:, 2]) - np.maximum(x, boxes[:, 0]))
    inter_h = np.maximum(0.0, np.minimum(y + h, boxes[:, 1] + boxes[:, 3]) - np.maximum(y, boxes[:, 1]))
    intersection = inter_w * inter_h
    union = area + areas - intersection
    
    ious = np.zeros(len(boxes), dtype=np.float64)
    valid = (area > 0) & (areas > 0) & (union > 0)
    ious[valid] = intersection[valid] / union[valid]
    return ious


def apply_nms(boxes: np.ndarray, scores: np.ndarray, iou_threshold: float) -> List[int]:
    """
    貪欲 Non-Maximum Suppression
    
    スコア降順に走査し、採用した矩形との IoU が閾値を超える後続候補を抑制する。
    
    Args:
        boxes: (K, 4) 左上基準矩形
        scores: (K,) スコア
        iou_threshold: 抑制 IoU 閾値
        
    Returns:
        採用された候補のインデックス（スコア降順）
    """
    if len(scores) == 0:
        return []
    
    boxes = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
    # 同点は元の順序を保つ
    order = np.argsort(-np.asarray(scores, dtype=np.float64), kind='stable')
    suppressed = np.zeros(len(order), dtype=bool)
    keep: List[int] = []
    
    for rank, idx in enumerate(order):
        if suppressed[rank]:
            continue
        keep.append(int(idx))
        
        rest = order[rank + 1:]
        if len(rest) == 0:
            break
        ious = _iou_one_to_many(boxes[idx], boxes[rest])
        suppressed[rank + 1:] |= ious > iou_threshold
    
    return keep


class TensorDecoder:
    """YOLOセグメンテーション検出テンソルのデコーダ"""
    
    def __init__(self, config: Optional[DecoderConfig] = None):
        """
        初期化
        
        Args:
            config: デコード設定（信頼度閾値・NMS閾値・モデル入力解像度）
        """
        self.config = config or DecoderConfig()
        
        self.performance_stats = {
            'total_decodes': 0,
            'candidates_above_threshold': 0,
            'detections_kept': 0,
            'decode_time_ms': 0.0,
            'avg_decode_time_ms': 0.0
        }
    
    def decode(
        self,
        predictions: np.ndarray,
        frame_width: int,
        frame_height: int,
        num_candidates: Optional[int] = None,
        transposed: Optional[bool] = None
    ) -> List[RawDetection]:
        """
        生テンソルを RawDetection のリストへ変換
        
        Args:
            predictions: [F, D], [1, F, D], [1, D, F] またはフラットバッファ
            frame_width: ソースフレーム幅（ピクセル）
            frame_height: ソースフレーム高さ（ピクセル）
            num_candidates: フラットバッファの場合の候補数 D
            transposed: True なら [D, F] / [1, D, F] として読む（未指定なら設定値）。
                設定も None なら [F, D] を基本とし、そう読めない [1, D, F] だけ転置する
            
        Returns:
            スコア降順の RawDetection リスト（不正入力なら空リスト）
        """
        start_time = time.perf_counter()
        
        if transposed is None:
            transposed = self.config.transposed
        matrix = self._as_feature_matrix(predictions, num_candidates, transposed)
        if matrix is None:
            return []
        
        num_features, num_dets = matrix.shape
        num_coeffs = num_features - MASK_COEFF_OFFSET if num_features > MASK_COEFF_OFFSET else 0
        
        scores = matrix[SCORE_FEATURE_INDEX]
        candidate_indices = np.nonzero(scores > self.config.confidence_threshold)[0]
        
        if len(candidate_indices) == 0:
            self._update_stats(start_time, 0, 0)
            return []
        
        model_boxes = matrix[:BBOX_FEATURE_COUNT, candidate_indices].T  # (K, 4) cx, cy, w, h
        boxes = self._to_frame_boxes(model_boxes, frame_width, frame_height)
        candidate_scores = scores[candidate_indices]
        
        keep = apply_nms(boxes, candidate_scores, self.config.nms_threshold)
        
        detections = []
        for k in keep:
            candidate = int(candidate_indices[k])
            if num_coeffs > 0:
                coefficients = matrix[MASK_COEFF_OFFSET:, candidate].astype(np.float64).copy()
            else:
                coefficients = np.zeros(0, dtype=np.float64)
            detections.append(RawDetection(
                score=float(candidate_scores[k]),
                bbox=tuple(float(v) for v in boxes[k]),
                model_bbox=tuple(float(v) for v in model_boxes[k]),
                coefficients=coefficients,
                candidate_index=candidate
            ))
        
        self._update_stats(start_time, len(candidate_indices), len(detections))
        logger.debug(
            f"Decoded {num_dets} candidates: {len(candidate_indices)} above "
            f"{self.config.confidence_threshold}, {len(detections)} after NMS"
        )
        return detections
    
    def _as_feature_matrix(
        self,
        predictions: np.ndarray,
        num_candidates: Optional[int],
        transposed: Optional[bool] = None
    ) -> Optional[np.ndarray]:
        """入力を (F, D) 行列へ正規化する。不正なら None"""
        array = np.asarray(predictions)
        if array.size == 0:
            logger.debug("Empty prediction tensor")
            return None
        
        if num_candidates is not None:
            # フラットバッファ
            if num_candidates <= 0 or array.size % num_candidates != 0:
                logger.warning(
                    f"Flat prediction buffer of size {array.size} does not divide into "
                    f"{num_candidates} candidates"
                )
                return None
            matrix = array.reshape(-1, num_candidates)
        elif array.ndim == 3:
            if array.shape[0] != 1:
                logger.warning(f"Unexpected batch size in prediction shape {array.shape}")
                return None
            matrix = array[0]
            if transposed is None:
                # 特徴量軸が矩形すら持てず、後ろの軸なら持てるときだけ [1, D, F]
                transposed = (matrix.shape[0] <= BBOX_FEATURE_COUNT
                              and matrix.shape[1] > BBOX_FEATURE_COUNT)
        elif array.ndim == 2:
            matrix = array
        else:
            logger.warning(f"Unexpected prediction shape: {array.shape}")
            return None
        
        if transposed and num_candidates is None:
            # [D, F] → [F, D]
            logger.debug(f"Transposing prediction tensor of shape {array.shape}")
            matrix = matrix.T
        
        num_features, num_dets = matrix.shape
        if num_dets == 0 or num_features <= BBOX_FEATURE_COUNT:
            logger.warning(f"Invalid dimensions: features={num_features}, candidates={num_dets}")
            return None
        
        return matrix.astype(np.float64, copy=False)
    
    def _to_frame_boxes(self, model_boxes: np.ndarray, frame_width: int, frame_height: int) -> np.ndarray:
        """モデル入力空間の中心基準矩形をソースフレームの左上基準矩形へ変換"""
        scale = np.array([
            frame_width / self.config.model_input_width,
            frame_height / self.config.model_input_height,
        ], dtype=np.float64)
        
        centers = model_boxes[:, :2] * scale
        sizes = model_boxes[:, 2:4] * scale
        origins = np.maximum(centers - sizes / 2.0, 0.0)
        
        return np.hstack([origins, sizes])
    
    def _update_stats(self, start_time: float, num_candidates: int, num_kept: int) -> None:
        """統計更新"""
        decode_time_ms = (time.perf_counter() - start_time) * 1000
        self.performance_stats['total_decodes'] += 1
        self.performance_stats['candidates_above_threshold'] += num_candidates
        self.performance_stats['detections_kept'] += num_kept
        self.performance_stats['decode_time_ms'] = decode_time_ms
        
        total = self.performance_stats['total_decodes']
        prev_avg = self.performance_stats['avg_decode_time_ms']
        self.performance_stats['avg_decode_time_ms'] = (
            (prev_avg * (total - 1) + decode_time_ms) / total
        )
    
    def get_performance_stats(self) -> Dict[str, Any]:
        """パフォーマンス統計を取得"""
        return self.performance_stats.copy()


# 便利関数
def decode_detections(
    predictions: np.ndarray,
    frame_width: int,
    frame_height: int,
    confidence_threshold: float = 0.25,
    nms_threshold: float = 0.45,
    model_input_size: Tuple[int, int] = (640, 640),
    num_candidates: Optional[int] = None,
    transposed: Optional[bool] = None
) -> List[RawDetection]:
    """
    テンソルデコードの簡易インターフェース
    
    Args:
        predictions: 生の検出テンソル
        frame_width: ソースフレーム幅
        frame_height: ソースフレーム高さ
        confidence_threshold: 信頼度閾値
        nms_threshold: NMS IoU 閾値
        model_input_size: モデル入力解像度 (幅, 高さ)
        num_candidates: フラットバッファの場合の候補数
        transposed: [1, D, F] レイアウトを明示する場合 True
        
    Returns:
        RawDetection リスト
    """
    decoder = TensorDecoder(DecoderConfig(
        confidence_threshold=confidence_threshold,
        nms_threshold=nms_threshold,
        model_input_width=model_input_size[0],
        model_input_height=model_input_size[1]
    ))
    return decoder.decode(predictions, frame_width, frame_height, num_candidates, transposed)


def create_mock_model_outputs(
    boxes: List[Tuple[float, float, float, float]],
    scores: List[float],
    num_candidates: int = 8400,
    num_coeffs: int = 32,
    proto_size: Tuple[int, int] = (160, 160)
) -> Tuple[np.ndarray, np.ndarray]:
    """
    テスト用のモックモデル出力を作成
    
    プロトタイプ0チャンネル目に楕円ブロブ、1チャンネル目に定数1を置き、
    各候補の係数は (10, -5, 0, ...) とする。sigmoid(10·blob − 5) が
    bbox内の楕円形マスクになる。
    
    Args:
        boxes: モデル入力空間の (cx, cy, w, h)
        scores: 各候補のスコア
        num_candidates: 候補数 D
        num_coeffs: マスク係数数 M（2以上）
        proto_size: プロトタイプ解像度 (H, W)
        
    Returns:
        (predictions [5+M, D], prototypes [M, H, W])
    """
    num_features = MASK_COEFF_OFFSET + num_coeffs
    predictions = np.zeros((num_features, num_candidates), dtype=np.float32)
    
    stride = max(1, num_candidates // max(len(boxes), 1))
    for i, (box, score) in enumerate(zip(boxes, scores)):
        column = min(i * stride, num_candidates - 1)
        predictions[:BBOX_FEATURE_COUNT, column] = box
        predictions[SCORE_FEATURE_INDEX, column] = score
        if num_coeffs >= 2:
            predictions[MASK_COEFF_OFFSET, column] = 10.0
            predictions[MASK_COEFF_OFFSET + 1, column] = -5.0
    
    proto_h, proto_w = proto_size
    prototypes = np.zeros((num_coeffs, proto_h, proto_w), dtype=np.float32)
    if num_coeffs >= 2:
        ys, xs = np.mgrid[0:proto_h, 0:proto_w]
        nx = (xs + 0.5) / proto_w - 0.5
        ny = (ys + 0.5) / proto_h - 0.5
        prototypes[0] = np.exp(-((nx / 0.35) ** 2 + (ny / 0.42) ** 2))
        prototypes[1] = 1.0
    
    return predictions, prototypes
