"""
デバッグ描画パッケージ
"""

from .overlay import (
    draw_detections,
    apply_color_tint,
    draw_matches,
    draw_hand_landmarks,
    render_debug_frame
)

__all__ = [
    'draw_detections',
    'apply_color_tint',
    'draw_matches',
    'draw_hand_landmarks',
    'render_debug_frame'
]
