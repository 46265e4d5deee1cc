"""
爪セグメンテーションパッケージ
YOLOv8-seg 生テンソルのデコード → NMS → マスク係数とプロトタイプからのポリゴン復元
"""

from .decoder import (
    TensorDecoder,
    calculate_iou,
    apply_nms,
    decode_detections,
    create_mock_model_outputs
)

from .mask import (
    MaskReconstructor,
    compute_mask_probabilities,
    marching_squares_points,
    grid_to_frame,
    polygon_centroid,
    sort_points_by_angle,
    simplify_polygon,
    rounded_rect_polygon
)

__all__ = [
    # デコード
    'TensorDecoder',
    'calculate_iou',
    'apply_nms',
    'decode_detections',
    'create_mock_model_outputs',
    
    # マスク復元
    'MaskReconstructor',
    'compute_mask_probabilities',
    'marching_squares_points',
    'grid_to_frame',
    'polygon_centroid',
    'sort_points_by_angle',
    'simplify_polygon',
    'rounded_rect_polygon'
]
