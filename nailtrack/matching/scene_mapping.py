#!/usr/bin/env python3
"""
画像座標系 → レンダラー座標系の変換

姿勢推定は画像座標系（原点左上・x右・y下・z奥）で行う。
レンダラーは原点中央・y上向きの右手系を使うので、変換はここに集約する。

    ベクトル:   (x, y, z) → (x, -y, z)
    回転行列:   列 = (幅軸', 長さ軸', 法線軸')  ※ジオメトリの X=幅, Y=長さ, Z=法線
    位置:       (u, v) → (u·sx − W/2, −v·sy + H/2, 0)
    表示角度:   θ → −θ

y 成分の反転だけでは行列式が -1 になるが、長さ軸と法線軸の列を入れ替えるので
最終的な回転行列は常に行列式 +1 になる。
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np
from scipy.spatial.transform import Rotation

from ..data_types import NailMatch, OrientationBasis

_FLIP_Y = np.array([1.0, -1.0, 1.0])


@dataclass
class SceneTransform:
    """レンダラーへ渡す1枚の爪の配置"""
    key: Tuple[str, int]
    position: np.ndarray         # (3,)
    rotation_matrix: np.ndarray  # (3, 3)
    quaternion: np.ndarray       # (x, y, z, w)
    width: float
    length: float
    angle: float


def to_scene_vector(vector: np.ndarray) -> np.ndarray:
    return np.asarray(vector, dtype=np.float64) * _FLIP_Y


def to_scene_rotation_matrix(basis: OrientationBasis) -> np.ndarray:
    """基底からレンダラー座標系の回転行列を作る"""
    return np.column_stack([
        to_scene_vector(basis.x_axis),  # 幅
        to_scene_vector(basis.z_axis),  # 長さ
        to_scene_vector(basis.y_axis),  # 法線
    ])


def to_scene_quaternion(basis: OrientationBasis) -> np.ndarray:
    """回転行列をクォータニオン (x, y, z, w) に変換"""
    return Rotation.from_matrix(to_scene_rotation_matrix(basis)).as_quat()


def to_scene_position(
    point: Tuple[float, float],
    canvas_width: float,
    canvas_height: float,
    scale_x: float = 1.0,
    scale_y: float = 1.0
) -> np.ndarray:
    """フレーム上のピクセル位置を中央原点・y上向きの位置へ"""
    u, v = point
    return np.array([
        u * scale_x - canvas_width / 2.0,
        -(v * scale_y) + canvas_height / 2.0,
        0.0
    ])


def to_scene_angle(angle: float) -> float:
    """画像座標系の角度をレンダラー座標系の角度へ"""
    return -float(angle)


def to_scene_transform(
    match: NailMatch,
    canvas_width: float,
    canvas_height: float,
    scale_x: float = 1.0,
    scale_y: float = 1.0,
    size_scale: float = 1.0
) -> Optional[SceneTransform]:
    """
    マッチをレンダラー用の配置に変換
    
    Args:
        match: 姿勢推定済みマッチ
        canvas_width: 描画キャンバス幅
        canvas_height: 描画キャンバス高さ
        scale_x: フレーム → キャンバスの x 倍率
        scale_y: フレーム → キャンバスの y 倍率
        size_scale: 幅・長さに掛ける倍率
        
    Returns:
        SceneTransform。姿勢なしのマッチは None
    """
    if match.orientation is None or match.width is None or match.height is None:
        return None
    
    return SceneTransform(
        key=match.key,
        position=to_scene_position(match.centroid, canvas_width, canvas_height, scale_x, scale_y),
        rotation_matrix=to_scene_rotation_matrix(match.orientation),
        quaternion=to_scene_quaternion(match.orientation),
        width=match.width * scale_x * size_scale,
        length=match.height * scale_y * size_scale,
        angle=to_scene_angle(match.angle if match.angle is not None else 0.0)
    )
