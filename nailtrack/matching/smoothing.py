#!/usr/bin/env python3
"""
爪角度の時間平滑化

(手ID, 指先) ごとに直近 N 個の生角度を保持し、円周平均で平滑化します。
角度は ±π で折り返すため算術平均は使えない。
"""

import dataclasses
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional
import numpy as np

from .. import get_logger
from ..config import SmoothingConfig
from ..data_types import NailMatch, MatchKey

logger = get_logger(__name__)


def circular_mean(angles: Iterable[float]) -> float:
    """atan2(mean(sin), mean(cos))"""
    values = np.asarray(list(angles), dtype=np.float64)
    if values.size == 0:
        return 0.0
    return float(np.arctan2(np.mean(np.sin(values)), np.mean(np.cos(values))))


class TemporalSmoother:
    """キーごとのスライディングウィンドウ角度平滑化"""
    
    def __init__(self, config: Optional[SmoothingConfig] = None):
        """
        初期化
        
        Args:
            config: 平滑化設定（ウィンドウサイズ・アイドル破棄サイクル数）
        """
        self.config = config or SmoothingConfig()
        self.histories: Dict[MatchKey, Deque[float]] = {}
        self.idle_cycles: Dict[MatchKey, int] = {}
    
    def smooth(self, matches: List[NailMatch], update: bool = True) -> List[NailMatch]:
        """
        角度を平滑値に置き換えたマッチリストを返す
        
        Args:
            matches: 今サイクルのマッチ（raw_angle または angle を持つもの）
            update: False なら履歴を更新せずに平滑値だけ計算する
            
        Returns:
            angle が平滑値に置き換わったマッチリスト（姿勢なしのマッチはそのまま）
        """
        results = []
        seen = set()
        
        for match in matches:
            raw = match.raw_angle if match.raw_angle is not None else match.angle
            if raw is None:
                results.append(match)
                continue
            
            key = match.key
            seen.add(key)
            
            if update:
                history = self.histories.get(key)
                if history is None:
                    history = deque(maxlen=self.config.window_size)
                    self.histories[key] = history
                history.append(float(raw))
                window = list(history)
            else:
                window = list(self.histories.get(key, ()))
                window.append(float(raw))
                window = window[-self.config.window_size:]
            
            results.append(dataclasses.replace(match, angle=circular_mean(window), raw_angle=float(raw)))
        
        if update:
            self._age_missing_keys(seen)
        
        return results
    
    def _age_missing_keys(self, seen: set) -> None:
        """今サイクルに現れなかったキーのアイドル数を数え、上限超過で破棄"""
        for key in list(self.histories):
            if key in seen:
                self.idle_cycles[key] = 0
                continue
            self.idle_cycles[key] = self.idle_cycles.get(key, 0) + 1
            
            max_idle = self.config.max_idle_cycles
            if max_idle is not None and self.idle_cycles[key] > max_idle:
                logger.debug(f"Dropping smoothing history for {key} after {self.idle_cycles[key]} idle cycles")
                del self.histories[key]
                del self.idle_cycles[key]
    
    def smoothed_angle(self, key: MatchKey) -> Optional[float]:
        """現在の履歴から平滑角度を取得"""
        history = self.histories.get(key)
        if not history:
            return None
        return circular_mean(history)
    
    def history(self, key: MatchKey) -> List[float]:
        return list(self.histories.get(key, ()))
    
    @property
    def tracked_keys(self) -> List[MatchKey]:
        return list(self.histories)
    
    def reset(self) -> None:
        """全履歴をクリア"""
        self.histories.clear()
        self.idle_cycles.clear()
