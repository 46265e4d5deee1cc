"""
手ランドマーク入力パッケージ
外部トラッカー出力 → LandmarkSet 変換、モック手生成、指関節インデックス
"""

from .landmarks import (
    finger_joint_indices,
    landmark_sets_from_mediapipe,
    hand_bounding_box,
    filter_landmark_sets_by_confidence,
    get_dominant_hand,
    create_mock_landmark_set
)

__all__ = [
    'finger_joint_indices',
    'landmark_sets_from_mediapipe',
    'hand_bounding_box',
    'filter_landmark_sets_by_confidence',
    'get_dominant_hand',
    'create_mock_landmark_set'
]
