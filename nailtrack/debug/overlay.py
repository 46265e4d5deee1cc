#!/usr/bin/env python3
"""
デバッグ用オーバーレイ描画

爪ポリゴン・bbox・指先との対応線・手の骨格を OpenCV で画像に描きます。
3Dレンダリングは扱わない。
"""

from typing import List, Optional, Tuple
import numpy as np
import cv2

from ..constants import (
    HAND_CONNECTIONS, FINGERTIP_INDICES,
    DEBUG_POINT_SIZE, DEBUG_LINE_THICKNESS, DEFAULT_TINT_ALPHA,
    COLOR_GREEN, COLOR_BLUE, COLOR_YELLOW, COLOR_MATCH, COLOR_WHITE, COLOR_BLACK
)
from ..data_types import Detection, LandmarkSet, NailMatch


def _to_int_points(polygon: np.ndarray) -> np.ndarray:
    return np.round(np.asarray(polygon, dtype=np.float64)).astype(np.int32).reshape(-1, 1, 2)


def draw_detections(
    image: np.ndarray,
    detections: List[Detection],
    color: Tuple[int, int, int] = COLOR_YELLOW,
    draw_bbox: bool = True
) -> np.ndarray:
    """検出ポリゴンとbboxを描画"""
    for detection in detections:
        if detection.polygon is not None and len(detection.polygon) >= 3:
            cv2.polylines(image, [_to_int_points(detection.polygon)], True, color, 1)
        
        if draw_bbox:
            x, y, w, h = (int(round(v)) for v in detection.bbox)
            cv2.rectangle(image, (x, y), (x + w, y + h), color, 1)
            cv2.putText(image, f"{detection.score:.2f}", (x, max(y - 4, 10)),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.4, color, 1)
    
    return image


def apply_color_tint(
    image: np.ndarray,
    detections: List[Detection],
    color: Tuple[int, int, int],
    alpha: float = DEFAULT_TINT_ALPHA
) -> np.ndarray:
    """
    爪ポリゴン内を指定色でアルファ合成する
    
    Args:
        image: BGR画像
        detections: 検出リスト
        color: BGR色
        alpha: 不透明度 0-1
        
    Returns:
        合成後の新しい画像
    """
    if not detections:
        return image.copy()
    
    overlay = image.copy()
    polygons = [_to_int_points(d.polygon) for d in detections
                if d.polygon is not None and len(d.polygon) >= 3]
    if not polygons:
        return image.copy()
    
    cv2.fillPoly(overlay, polygons, color)
    return cv2.addWeighted(overlay, alpha, image, 1.0 - alpha, 0.0)


def draw_matches(image: np.ndarray, matches: List[NailMatch]) -> np.ndarray:
    """重心と指先を結ぶ線・重心点・ラベル・長さ軸を描画"""
    for match in matches:
        centroid = tuple(int(round(v)) for v in match.centroid)
        fingertip = tuple(int(round(v)) for v in match.fingertip_position)
        
        cv2.line(image, centroid, fingertip, COLOR_MATCH, DEBUG_LINE_THICKNESS)
        cv2.circle(image, centroid, DEBUG_POINT_SIZE, COLOR_MATCH, -1)
        
        if match.angle is not None and match.height:
            half = match.height / 2.0
            tip = (
                int(round(match.centroid[0] + half * np.cos(match.angle))),
                int(round(match.centroid[1] + half * np.sin(match.angle)))
            )
            cv2.arrowedLine(image, centroid, tip, COLOR_BLUE, 1, tipLength=0.3)
        
        label = f"{match.handedness.value} {match.finger_name} ({match.confidence * 100:.0f}%)"
        (text_w, text_h), _ = cv2.getTextSize(label, cv2.FONT_HERSHEY_SIMPLEX, 0.4, 1)
        origin = (fingertip[0] + 10, fingertip[1] - 8)
        cv2.rectangle(image, (origin[0] - 2, origin[1] - text_h - 4),
                      (origin[0] + text_w + 2, origin[1] + 4), COLOR_BLACK, -1)
        cv2.putText(image, label, origin, cv2.FONT_HERSHEY_SIMPLEX, 0.4, COLOR_WHITE, 1)
    
    return image


def draw_hand_landmarks(image: np.ndarray, landmark_sets: List[LandmarkSet]) -> np.ndarray:
    """手の骨格と指先を描画"""
    height, width = image.shape[:2]
    
    for hand in landmark_sets:
        pts = [(int(lm.x * width), int(lm.y * height)) for lm in hand.landmarks]
        
        for a, b in HAND_CONNECTIONS:
            if a < len(pts) and b < len(pts):
                cv2.line(image, pts[a], pts[b], COLOR_BLUE, 1)
        
        for i, pt in enumerate(pts):
            radius = DEBUG_POINT_SIZE if i in FINGERTIP_INDICES else 2
            cv2.circle(image, pt, radius, COLOR_GREEN, -1)
        
        if pts:
            label = f"{hand.handedness.value} {hand.confidence * 100:.0f}%"
            cv2.putText(image, label, (pts[0][0] - 20, pts[0][1] + 20),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.45, COLOR_WHITE, 1)
    
    return image


def render_debug_frame(
    image: np.ndarray,
    detections: List[Detection],
    matches: List[NailMatch],
    landmark_sets: Optional[List[LandmarkSet]] = None,
    tint_color: Optional[Tuple[int, int, int]] = None
) -> np.ndarray:
    """
    デバッグ表示一式を描いた新しい画像を返す
    
    Args:
        image: 元フレーム（BGR）
        detections: 検出リスト
        matches: マッチリスト
        landmark_sets: 手ランドマーク（省略可）
        tint_color: 爪の着色（Noneなら着色しない）
    """
    canvas = image.copy()
    if tint_color is not None:
        canvas = apply_color_tint(canvas, detections, tint_color)
    if landmark_sets:
        draw_hand_landmarks(canvas, landmark_sets)
    draw_detections(canvas, detections)
    draw_matches(canvas, matches)
    return canvas
