#!/usr/bin/env python3
"""
検出と指先の一対一割り当て戦略

既定は貪欲法（スコア降順に未使用の組を採用）。全体最適が必要な場合は
ハンガリアン法による最大重みマッチングに差し替えられる。
"""

from abc import ABC, abstractmethod
from typing import List
import numpy as np
from scipy.optimize import linear_sum_assignment

from .. import get_logger
from ..data_types import MatchCandidate

logger = get_logger(__name__)


def sort_candidates(candidates: List[MatchCandidate]) -> List[MatchCandidate]:
    """スコア降順。同点は (検出, 手, 指先) 順で決定的に並べる"""
    return sorted(
        candidates,
        key=lambda c: (-c.match_score, c.detection_index, c.hand_index, c.fingertip_index)
    )


class AssignmentStrategy(ABC):
    """割り当て戦略の抽象基底クラス"""
    
    name = "base"
    
    @abstractmethod
    def assign(self, candidates: List[MatchCandidate]) -> List[MatchCandidate]:
        """
        候補から採用する組を選ぶ
        
        Args:
            candidates: 探索半径内の全候補
            
        Returns:
            検出・(手ID, 指先) のどちらも重複しない採用候補（スコア降順）
        """
        pass


class GreedyAssignment(AssignmentStrategy):
    """スコア降順の貪欲割り当て"""
    
    name = "greedy"
    
    def assign(self, candidates: List[MatchCandidate]) -> List[MatchCandidate]:
        accepted = []
        used_detections = set()
        used_keys = set()
        
        for candidate in sort_candidates(candidates):
            if candidate.detection_index in used_detections or candidate.key in used_keys:
                continue
            accepted.append(candidate)
            used_detections.add(candidate.detection_index)
            used_keys.add(candidate.key)
        
        return accepted


class OptimalAssignment(AssignmentStrategy):
    """ハンガリアン法による総スコア最大の割り当て"""
    
    name = "optimal"
    
    def assign(self, candidates: List[MatchCandidate]) -> List[MatchCandidate]:
        if not candidates:
            return []
        
        detection_ids = sorted({c.detection_index for c in candidates})
        keys = sorted({c.key for c in candidates})
        row_of = {d: i for i, d in enumerate(detection_ids)}
        col_of = {k: j for j, k in enumerate(keys)}
        
        # 候補外の組は重み0（採用しないのと同じ）。結果からは除外する
        cost_matrix = np.zeros((len(detection_ids), len(keys)), dtype=np.float64)
        lookup = {}
        for candidate in sort_candidates(candidates):
            cell = (row_of[candidate.detection_index], col_of[candidate.key])
            if cell not in lookup:
                lookup[cell] = candidate
                cost_matrix[cell] = -candidate.match_score
        
        try:
            rows, cols = linear_sum_assignment(cost_matrix)
        except ValueError as e:
            logger.error(f"Assignment algorithm failed: {e}, falling back to greedy")
            return GreedyAssignment().assign(candidates)
        
        accepted = [lookup[(r, c)] for r, c in zip(rows, cols) if (r, c) in lookup]
        return sort_candidates(accepted)


def create_assignment_strategy(name: str = "greedy") -> AssignmentStrategy:
    """名前から割り当て戦略を作成"""
    strategies = {
        GreedyAssignment.name: GreedyAssignment,
        OptimalAssignment.name: OptimalAssignment,
    }
    if name not in strategies:
        raise ValueError(f"Unknown assignment strategy '{name}', expected one of {sorted(strategies)}")
    return strategies[name]()
