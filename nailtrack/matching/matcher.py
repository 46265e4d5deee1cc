#!/usr/bin/env python3
"""
爪検出と指先ランドマークのマッチング

各検出の重心と各手の指先ピクセル位置の距離、検出スコアから
マッチスコアを計算し、割り当て戦略で一対一の組を選びます。
"""

import time
from typing import List, Optional, Dict, Any
import numpy as np

from .. import get_logger
from ..config import MatchingConfig
from ..data_types import Detection, LandmarkSet, NailMatch, MatchCandidate
from .assignment import AssignmentStrategy, create_assignment_strategy

logger = get_logger(__name__)


class LandmarkMatcher:
    """検出と指先の対応付け"""
    
    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        strategy: Optional[AssignmentStrategy] = None
    ):
        """
        初期化
        
        Args:
            config: マッチング設定（探索半径比・スコア重み・対象指先）
            strategy: 割り当て戦略（Noneなら設定の assignment_strategy から作成）
        """
        self.config = config or MatchingConfig()
        self.strategy = strategy or create_assignment_strategy(self.config.assignment_strategy)
        
        self.performance_stats = {
            'total_matches': 0,
            'candidates_evaluated': 0,
            'matches_accepted': 0,
            'matching_time_ms': 0.0
        }
        
        logger.debug(
            f"LandmarkMatcher initialized (radius ratio {self.config.search_radius_ratio}, "
            f"strategy {self.strategy.name})"
        )
    
    def search_radius(self, frame_width: int, frame_height: int) -> float:
        """探索半径（ピクセル）"""
        return self.config.search_radius_ratio * min(frame_width, frame_height)
    
    def find_candidates(
        self,
        detections: List[Detection],
        landmark_sets: List[LandmarkSet],
        frame_width: int,
        frame_height: int,
        search_radius: Optional[float] = None
    ) -> List[MatchCandidate]:
        """
        探索半径内の (検出, 手, 指先) 候補を列挙
        
        Args:
            detections: 爪検出リスト
            landmark_sets: 手ランドマークリスト
            frame_width: フレーム幅
            frame_height: フレーム高さ
            search_radius: 探索半径（ピクセル）。Noneなら設定から算出
            
        Returns:
            マッチ候補リスト（未ソート）
        """
        if not detections or not landmark_sets:
            return []
        
        radius = self.search_radius(frame_width, frame_height) if search_radius is None else search_radius
        if radius <= 0:
            return []
        
        centroids = np.array([d.centroid for d in detections], dtype=np.float64)
        det_scores = np.array([d.score for d in detections], dtype=np.float64)
        
        candidates = []
        for hand_index, hand in enumerate(landmark_sets):
            for tip_index in self.config.fingertip_indices:
                if not hand.has_landmark(tip_index):
                    continue
                tip = hand.pixel_position(tip_index, frame_width, frame_height)
                distances = np.hypot(centroids[:, 0] - tip[0], centroids[:, 1] - tip[1])
                
                for det_index in np.nonzero(distances < radius)[0]:
                    distance = float(distances[det_index])
                    score = (
                        self.config.distance_weight * (1.0 - distance / radius)
                        + self.config.confidence_weight * float(det_scores[det_index])
                    )
                    candidates.append(MatchCandidate(
                        detection_index=int(det_index),
                        hand_index=hand_index,
                        fingertip_index=tip_index,
                        key=(hand.id, tip_index),
                        distance=distance,
                        match_score=score,
                        fingertip_position=(float(tip[0]), float(tip[1]))
                    ))
        
        return candidates
    
    def match(
        self,
        detections: List[Detection],
        landmark_sets: List[LandmarkSet],
        frame_width: int,
        frame_height: int,
        search_radius: Optional[float] = None
    ) -> List[NailMatch]:
        """
        検出と指先を一対一に対応付け
        
        Returns:
            NailMatch リスト（スコア降順）。入力が空なら空リスト
        """
        start_time = time.perf_counter()
        
        candidates = self.find_candidates(
            detections, landmark_sets, frame_width, frame_height, search_radius
        )
        accepted = self.strategy.assign(candidates)
        
        matches = []
        for candidate in accepted:
            detection = detections[candidate.detection_index]
            hand = landmark_sets[candidate.hand_index]
            matches.append(NailMatch(
                detection=detection,
                detection_index=candidate.detection_index,
                hand_id=hand.id,
                hand_index=candidate.hand_index,
                handedness=hand.handedness,
                fingertip_index=candidate.fingertip_index,
                fingertip_position=candidate.fingertip_position,
                centroid=detection.centroid,
                match_score=candidate.match_score,
                distance=candidate.distance
            ))
        
        self._update_stats(start_time, len(candidates), len(matches))
        logger.debug(
            f"Matching: {len(detections)} detections x {len(landmark_sets)} hands -> "
            f"{len(candidates)} candidates, {len(matches)} matches"
        )
        return matches
    
    def _update_stats(self, start_time: float, num_candidates: int, num_matches: int) -> None:
        """統計更新"""
        self.performance_stats['total_matches'] += 1
        self.performance_stats['candidates_evaluated'] += num_candidates
        self.performance_stats['matches_accepted'] += num_matches
        self.performance_stats['matching_time_ms'] = (time.perf_counter() - start_time) * 1000
    
    def get_performance_stats(self) -> Dict[str, Any]:
        """パフォーマンス統計を取得"""
        return self.performance_stats.copy()
