#!/usr/bin/env python3
"""
手ランドマーク入力アダプタ

外部のランドマークトラッカー（MediaPipe Hands 等）の出力を LandmarkSet へ
変換するユーティリティと、テスト・デモ用のモック手生成を提供します。
"""

import time
from typing import Any, Dict, List, Optional, Tuple
import numpy as np

from .. import get_logger
from ..constants import FINGERTIP_INDICES, HAND_LANDMARK_COUNT
from ..data_types import HandednessType, HandLandmark, LandmarkSet

logger = get_logger(__name__)


# 正規化手テンプレート（手首原点・指先が -y 方向、手の長さ≒1）
_HAND_TEMPLATE = np.array([
    [0.00, 0.50],                                              # 0 手首
    [-0.15, 0.40], [-0.25, 0.30], [-0.32, 0.20], [-0.38, 0.12],  # 親指
    [-0.12, 0.10], [-0.12, -0.10], [-0.12, -0.20], [-0.12, -0.30],  # 人差し指
    [-0.04, 0.08], [-0.04, -0.14], [-0.04, -0.25], [-0.04, -0.36],  # 中指
    [0.04, 0.10], [0.04, -0.10], [0.04, -0.20], [0.04, -0.30],      # 薬指
    [0.12, 0.14], [0.12, -0.02], [0.12, -0.10], [0.12, -0.18],      # 小指
], dtype=np.float64)

# 関節の深さ（付け根からの段数 × 相対深度）
_JOINT_LEVEL = np.array([0, 1, 2, 3, 4, 1, 2, 3, 4, 1, 2, 3, 4, 1, 2, 3, 4, 1, 2, 3, 4], dtype=np.float64)


def finger_joint_indices(tip_index: int) -> Optional[Dict[str, int]]:
    """
    指先インデックスから同じ指の関節インデックスを取得
    
    Returns:
        {'TIP', 'DIP', 'PIP', 'MCP'} の辞書。指先でなければ None
    """
    if tip_index not in FINGERTIP_INDICES:
        return None
    return {
        'TIP': tip_index,
        'DIP': tip_index - 1,
        'PIP': tip_index - 2,
        'MCP': tip_index - 3,
    }


def landmark_sets_from_mediapipe(results: Any, timestamp_ms: Optional[float] = None) -> List[LandmarkSet]:
    """
    MediaPipe Hands の処理結果を LandmarkSet リストへ変換
    
    `multi_hand_landmarks[i].landmark` と `multi_handedness[i].classification[0]`
    を持つオブジェクトなら何でも受け付ける。手IDは左右ラベルを基本とし、
    同じラベルが重複した場合のみ番号を付ける。
    
    Args:
        results: hands.process() の戻り値
        timestamp_ms: タイムスタンプ（Noneなら現在時刻）
        
    Returns:
        LandmarkSet のリスト
    """
    multi_landmarks = getattr(results, 'multi_hand_landmarks', None)
    multi_handedness = getattr(results, 'multi_handedness', None)
    if not multi_landmarks or not multi_handedness:
        return []
    
    if timestamp_ms is None:
        timestamp_ms = time.perf_counter() * 1000
    
    landmark_sets = []
    used_ids = set()
    
    for i, (hand_landmarks, handedness) in enumerate(zip(multi_landmarks, multi_handedness)):
        try:
            classification = handedness.classification[0]
            label = classification.label
            score = float(classification.score)
        except (AttributeError, IndexError) as e:
            logger.warning(f"Malformed handedness entry for hand {i}: {e}")
            continue
        
        landmarks = [
            HandLandmark(
                x=float(lm.x),
                y=float(lm.y),
                z=float(lm.z),
                visibility=float(getattr(lm, 'visibility', 1.0))
            )
            for lm in getattr(hand_landmarks, 'landmark', hand_landmarks)
        ]
        
        if len(landmarks) != HAND_LANDMARK_COUNT:
            logger.debug(f"Hand {i} has {len(landmarks)} landmarks (expected {HAND_LANDMARK_COUNT})")
        
        hand_type = HandednessType.from_label(label)
        hand_id = hand_type.value.lower()
        if hand_id in used_ids:
            hand_id = f"{hand_id}_{i}"
        used_ids.add(hand_id)
        
        landmark_sets.append(LandmarkSet(
            id=hand_id,
            landmarks=landmarks,
            handedness=hand_type,
            confidence=score,
            timestamp_ms=timestamp_ms
        ))
    
    return landmark_sets


def hand_bounding_box(
    landmark_set: LandmarkSet,
    frame_width: int,
    frame_height: int
) -> Tuple[float, float, float, float]:
    """ランドマーク全体を囲むピクセル矩形 (x, y, w, h)"""
    if not landmark_set.landmarks:
        return (0.0, 0.0, 0.0, 0.0)
    
    points = landmark_set.to_array()
    min_x, min_y = points[:, 0].min(), points[:, 1].min()
    max_x, max_y = points[:, 0].max(), points[:, 1].max()
    
    return (
        float(min_x * frame_width),
        float(min_y * frame_height),
        float((max_x - min_x) * frame_width),
        float((max_y - min_y) * frame_height)
    )


def filter_landmark_sets_by_confidence(
    landmark_sets: List[LandmarkSet],
    min_confidence: float = 0.7
) -> List[LandmarkSet]:
    """信頼度でフィルタリング"""
    return [hand for hand in landmark_sets if hand.confidence >= min_confidence]


def get_dominant_hand(landmark_sets: List[LandmarkSet]) -> Optional[LandmarkSet]:
    """最も信頼度の高い手を取得"""
    if not landmark_sets:
        return None
    return max(landmark_sets, key=lambda h: h.confidence)


def create_mock_landmark_set(
    hand_id: str = "right",
    handedness: HandednessType = HandednessType.RIGHT,
    center: Tuple[float, float] = (0.5, 0.5),
    scale: float = 0.3,
    rotation: float = 0.0,
    confidence: float = 0.95,
    depth_step: float = -0.01
) -> LandmarkSet:
    """
    テスト用のモック手ランドマークを作成
    
    Args:
        hand_id: 手ID
        handedness: 左右（LEFT はテンプレートを左右反転）
        center: 手首と中指先の中間あたりに来る正規化座標
        scale: 手の長さ（正規化座標）
        rotation: 画像平面内の回転 [rad]（0 で指先が画像上向き）
        confidence: 信頼度
        depth_step: 関節1段あたりの相対深度
    """
    template = _HAND_TEMPLATE.copy()
    if handedness == HandednessType.LEFT:
        template[:, 0] = -template[:, 0]
    
    cos_r, sin_r = np.cos(rotation), np.sin(rotation)
    rotated = np.column_stack([
        template[:, 0] * cos_r - template[:, 1] * sin_r,
        template[:, 0] * sin_r + template[:, 1] * cos_r,
    ])
    positions = rotated * scale + np.asarray(center, dtype=np.float64)
    depths = _JOINT_LEVEL * depth_step
    
    landmarks = [
        HandLandmark(x=float(px), y=float(py), z=float(pz), visibility=1.0)
        for (px, py), pz in zip(positions, depths)
    ]
    
    return LandmarkSet(
        id=hand_id,
        landmarks=landmarks,
        handedness=handedness,
        confidence=confidence,
        timestamp_ms=time.perf_counter() * 1000
    )
