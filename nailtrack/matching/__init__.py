"""
指先マッチングパッケージ
検出 × 指先の割り当て → 爪の3D基底・寸法推定 → 角度の時間平滑化 → レンダラー座標変換
"""

from .assignment import (
    AssignmentStrategy,
    GreedyAssignment,
    OptimalAssignment,
    create_assignment_strategy
)

from .matcher import LandmarkMatcher

from .orientation import (
    OrientationEstimator,
    build_orientation_basis,
    extract_dimensions
)

from .smoothing import (
    TemporalSmoother,
    circular_mean
)

from .scene_mapping import (
    SceneTransform,
    to_scene_vector,
    to_scene_rotation_matrix,
    to_scene_quaternion,
    to_scene_position,
    to_scene_angle,
    to_scene_transform
)

__all__ = [
    # 割り当て
    'AssignmentStrategy',
    'GreedyAssignment',
    'OptimalAssignment',
    'create_assignment_strategy',
    
    # マッチング
    'LandmarkMatcher',
    
    # 姿勢推定
    'OrientationEstimator',
    'build_orientation_basis',
    'extract_dimensions',
    
    # 平滑化
    'TemporalSmoother',
    'circular_mean',
    
    # 座標変換
    'SceneTransform',
    'to_scene_vector',
    'to_scene_rotation_matrix',
    'to_scene_quaternion',
    'to_scene_position',
    'to_scene_angle',
    'to_scene_transform'
]
