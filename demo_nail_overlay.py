#!/usr/bin/env python3
"""
NailTrack 爪オーバーレイ パイプラインデモ

カメラやモデルを使わず、合成した検出テンソルとモック手ランドマークで
デコード → マスク復元 → 指先マッチング → 姿勢推定 → 平滑化 を回します。

使用方法:
    python demo_nail_overlay.py
    python demo_nail_overlay.py --frames 60 --output overlay.png
"""

import argparse
import sys
from pathlib import Path

import numpy as np
import cv2

from nailtrack import setup_logging_from_config, get_logger
from nailtrack.config import load_config
from nailtrack.constants import DEFAULT_MODEL_INPUT_WIDTH, DEFAULT_MODEL_INPUT_HEIGHT
from nailtrack.data_types import HandednessType
from nailtrack.detection.landmarks import create_mock_landmark_set
from nailtrack.segmentation.decoder import create_mock_model_outputs
from nailtrack.pipeline import NailOverlayPipeline
from nailtrack.matching.scene_mapping import to_scene_transform
from nailtrack.debug.overlay import render_debug_frame

logger = get_logger("demo")


def synthesize_frame(frame_index: int, width: int, height: int, jitter: float, rng: np.random.Generator):
    """1フレーム分の手ランドマークとモデル出力を合成"""
    rotation = 0.4 * np.sin(frame_index * 0.1)
    hand = create_mock_landmark_set(
        hand_id="right",
        handedness=HandednessType.RIGHT,
        center=(0.5, 0.55),
        scale=0.45,
        rotation=rotation
    )
    
    sx = DEFAULT_MODEL_INPUT_WIDTH / width
    sy = DEFAULT_MODEL_INPUT_HEIGHT / height
    nail_w = 0.035 * width * sx
    nail_h = 0.05 * height * sy
    
    boxes, scores = [], []
    for tip in (4, 8, 12, 16, 20):
        fx, fy = hand.pixel_position(tip, width, height)
        fx += rng.normal(0.0, jitter)
        fy += rng.normal(0.0, jitter)
        boxes.append((fx * sx, fy * sy, nail_w, nail_h))
        scores.append(float(rng.uniform(0.55, 0.95)))
    
    predictions, prototypes = create_mock_model_outputs(boxes, scores)
    return hand, predictions, prototypes


def main():
    """メイン関数"""
    parser = argparse.ArgumentParser(
        description="NailTrack 爪オーバーレイ パイプラインデモ（合成データ）",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
使用例:
    python demo_nail_overlay.py                       # 30フレーム実行
    python demo_nail_overlay.py --frames 100 --jitter 3.0
    python demo_nail_overlay.py --output overlay.png  # 最終フレームを保存
        """
    )
    
    parser.add_argument('--frames', type=int, default=30, help='処理フレーム数')
    parser.add_argument('--width', type=int, default=1280, help='フレーム幅')
    parser.add_argument('--height', type=int, default=720, help='フレーム高さ')
    parser.add_argument('--jitter', type=float, default=1.5, help='指先位置ノイズ（ピクセル）')
    parser.add_argument('--seed', type=int, default=0, help='乱数シード')
    parser.add_argument('--config', type=Path, default=None, help='YAML設定ファイル')
    parser.add_argument('--output', type=Path, default=None, help='最終フレームのデバッグ画像出力先')
    parser.add_argument('--log-level', default=None, help='ログレベル（未指定なら設定ファイルの log_level）')
    
    args = parser.parse_args()
    
    if args.frames <= 0:
        print("Error: --frames must be positive")
        return 1
    
    config = load_config(args.config)
    if args.log_level is not None:
        config.log_level = args.log_level
    try:
        setup_logging_from_config(config)
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    
    pipeline = NailOverlayPipeline(config)
    rng = np.random.default_rng(args.seed)
    
    hand = None
    results = None
    for frame_index in range(args.frames):
        hand, predictions, prototypes = synthesize_frame(
            frame_index, args.width, args.height, args.jitter, rng
        )
        results = pipeline.process(predictions, prototypes, [hand], args.width, args.height)
        
        for match in results.matches:
            if match.angle is None:
                continue
            logger.debug(
                f"frame {frame_index:3d} {match.finger_name:6s} "
                f"raw {np.degrees(match.raw_angle):7.2f}deg smoothed {np.degrees(match.angle):7.2f}deg "
                f"size {match.width:.1f}x{match.height:.1f}px"
            )
    
    logger.info(f"Last frame: {len(results.detections)} detections, {len(results.matches)} matches")
    for match in results.matches:
        transform = to_scene_transform(match, args.width, args.height)
        if transform is None:
            logger.info(f"  {match.finger_name}: no orientation")
            continue
        logger.info(
            f"  {match.finger_name}: score {match.match_score:.3f}, "
            f"scene angle {np.degrees(transform.angle):.1f}deg, "
            f"quat {np.array2string(transform.quaternion, precision=3)}"
        )
    
    stats = pipeline.get_performance_stats()
    logger.info(f"Average cycle time: {stats['avg_processing_time_ms']:.2f}ms over {stats['frame_count']} frames")
    
    if args.output is not None:
        frame = np.full((args.height, args.width, 3), 40, dtype=np.uint8)
        image = render_debug_frame(frame, results.detections, results.matches, [hand], tint_color=(180, 60, 200))
        if not cv2.imwrite(str(args.output), image):
            logger.error(f"Failed to write {args.output}")
            return 1
        logger.info(f"Debug overlay written to {args.output}")
    
    return 0


if __name__ == "__main__":
    exit_code = main()
    sys.exit(exit_code)
