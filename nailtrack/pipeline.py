#!/usr/bin/env python3
"""
爪オーバーレイ用パイプライン: 各段を統合

デコード → マスク復元 → 指先マッチング → 姿勢推定 → 角度平滑化 を
1サイクル分まとめて実行します。入出力はすべて明示的な引数と戻り値で、
サイクルをまたぐ状態は平滑化履歴のみ。

スレッドセーフではない。呼び出し側は同じインスタンスを並行に呼ばないこと。
"""

import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List
import numpy as np

from . import get_logger
from .config import NailTrackConfig
from .data_types import RawDetection, Detection, LandmarkSet, NailMatch
from .segmentation.decoder import TensorDecoder
from .segmentation.mask import MaskReconstructor
from .matching.assignment import AssignmentStrategy
from .matching.matcher import LandmarkMatcher
from .matching.orientation import OrientationEstimator
from .matching.smoothing import TemporalSmoother

logger = get_logger(__name__)

STAGES = ('decode', 'reconstruct', 'match', 'orient', 'smooth')


@dataclass
class PipelineResults:
    """パイプライン処理結果"""
    raw_detections: List[RawDetection] = field(default_factory=list)
    detections: List[Detection] = field(default_factory=list)
    matches: List[NailMatch] = field(default_factory=list)
    processing_time_ms: float = 0.0
    stage_times: Dict[str, float] = field(default_factory=dict)
    
    @property
    def oriented_matches(self) -> List[NailMatch]:
        """姿勢推定に成功したマッチのみ"""
        return [m for m in self.matches if m.has_orientation]


class NailOverlayPipeline:
    """爪検出 → 指先対応 → 姿勢・平滑化 の統合パイプライン"""
    
    def __init__(
        self,
        config: Optional[NailTrackConfig] = None,
        assignment_strategy: Optional[AssignmentStrategy] = None
    ) -> None:
        """
        初期化
        
        Args:
            config: 全体設定
            assignment_strategy: 割り当て戦略の差し替え（Noneなら設定から作成）
        """
        self.config = config or NailTrackConfig()
        
        self.decoder = TensorDecoder(self.config.decoder)
        self.reconstructor = MaskReconstructor(self.config.mask)
        self.matcher = LandmarkMatcher(self.config.matching, assignment_strategy)
        self.estimator = OrientationEstimator(self.config.orientation)
        self.smoother = TemporalSmoother(self.config.smoothing)
        
        self._frame_count = 0
        self._total_time = 0.0
        self._stage_total_times = {stage: 0.0 for stage in STAGES}
        self._total_detections = 0
        self._total_matches = 0
        
        logger.info(
            f"NailOverlayPipeline initialized (conf>{self.config.decoder.confidence_threshold}, "
            f"nms {self.config.decoder.nms_threshold}, window {self.config.smoothing.window_size})"
        )
    
    def process(
        self,
        predictions: np.ndarray,
        prototypes: Optional[np.ndarray],
        landmark_sets: List[LandmarkSet],
        frame_width: int,
        frame_height: int,
        num_candidates: Optional[int] = None,
        update_smoothing: bool = True,
        search_radius: Optional[float] = None
    ) -> PipelineResults:
        """
        1サイクル分の処理
        
        Args:
            predictions: 検出テンソル（[F, D] 列優先レイアウト等）
            prototypes: マスクプロトタイプ [M, H, W]（None ならbbox由来ポリゴン）
            landmark_sets: 今サイクルの手ランドマーク
            frame_width: ソースフレーム幅
            frame_height: ソースフレーム高さ
            num_candidates: フラットバッファの場合の候補数
            update_smoothing: False ならこのサイクルを平滑化履歴に入れない
            search_radius: 探索半径（ピクセル）の明示指定
            
        Returns:
            PipelineResults（常に構造的に有効。何も無ければ空リスト）
        """
        start_time = time.perf_counter()
        stage_times: Dict[str, float] = {}
        
        t0 = time.perf_counter()
        raw_detections = self.decoder.decode(predictions, frame_width, frame_height, num_candidates)
        stage_times['decode'] = (time.perf_counter() - t0) * 1000
        
        t0 = time.perf_counter()
        detections = self.reconstructor.reconstruct_all(raw_detections, prototypes)
        stage_times['reconstruct'] = (time.perf_counter() - t0) * 1000
        
        results = self._process_matches(
            detections, landmark_sets, frame_width, frame_height,
            update_smoothing, search_radius, stage_times
        )
        results.raw_detections = raw_detections
        results.processing_time_ms = (time.perf_counter() - start_time) * 1000
        
        self._update_stats(results)
        return results
    
    def process_detections(
        self,
        detections: List[Detection],
        landmark_sets: List[LandmarkSet],
        frame_width: int,
        frame_height: int,
        update_smoothing: bool = True,
        search_radius: Optional[float] = None
    ) -> PipelineResults:
        """復元済みの検出からマッチング以降のみを実行"""
        start_time = time.perf_counter()
        results = self._process_matches(
            detections, landmark_sets, frame_width, frame_height,
            update_smoothing, search_radius, {}
        )
        results.processing_time_ms = (time.perf_counter() - start_time) * 1000
        self._update_stats(results)
        return results
    
    def _process_matches(
        self,
        detections: List[Detection],
        landmark_sets: List[LandmarkSet],
        frame_width: int,
        frame_height: int,
        update_smoothing: bool,
        search_radius: Optional[float],
        stage_times: Dict[str, float]
    ) -> PipelineResults:
        """マッチング → 姿勢推定 → 平滑化"""
        t0 = time.perf_counter()
        matches = self.matcher.match(detections, landmark_sets, frame_width, frame_height, search_radius)
        stage_times['match'] = (time.perf_counter() - t0) * 1000
        
        t0 = time.perf_counter()
        matches = self.estimator.estimate_all(matches, landmark_sets, frame_width, frame_height)
        stage_times['orient'] = (time.perf_counter() - t0) * 1000
        
        t0 = time.perf_counter()
        matches = self.smoother.smooth(matches, update=update_smoothing)
        stage_times['smooth'] = (time.perf_counter() - t0) * 1000
        
        return PipelineResults(
            detections=detections,
            matches=matches,
            stage_times=stage_times
        )
    
    def reset(self) -> None:
        """セッションリセット（平滑化履歴を破棄）"""
        self.smoother.reset()
        logger.info("Pipeline smoothing state reset")
    
    def _update_stats(self, results: PipelineResults) -> None:
        """統計更新"""
        self._frame_count += 1
        self._total_time += results.processing_time_ms
        for stage, elapsed in results.stage_times.items():
            self._stage_total_times[stage] += elapsed
        self._total_detections += len(results.detections)
        self._total_matches += len(results.matches)
        
        logger.debug(
            f"Cycle {self._frame_count}: {len(results.detections)} detections, "
            f"{len(results.matches)} matches ({results.processing_time_ms:.2f}ms)"
        )
    
    def get_performance_stats(self) -> Dict[str, Any]:
        """パフォーマンス統計を取得"""
        if self._frame_count == 0:
            return {
                'frame_count': 0,
                'avg_processing_time_ms': 0.0,
                'avg_stage_times_ms': {stage: 0.0 for stage in STAGES},
                'avg_detections': 0.0,
                'avg_matches': 0.0
            }
        
        return {
            'frame_count': self._frame_count,
            'avg_processing_time_ms': self._total_time / self._frame_count,
            'avg_stage_times_ms': {
                stage: total / self._frame_count
                for stage, total in self._stage_total_times.items()
            },
            'avg_detections': self._total_detections / self._frame_count,
            'avg_matches': self._total_matches / self._frame_count
        }
    
    def reset_stats(self) -> None:
        """統計をリセット"""
        self._frame_count = 0
        self._total_time = 0.0
        self._stage_total_times = {stage: 0.0 for stage in STAGES}
        self._total_detections = 0
        self._total_matches = 0
