#!/usr/bin/env python3
"""
NailTrack 設定管理システム

デコード・マスク復元・マッチング・姿勢推定・平滑化の設定値を
統一管理し、Magic Numberのハードコーディングを解消します。
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Optional, Dict, Any, Tuple
from pathlib import Path
import yaml

from . import get_logger
from .constants import (
    DEFAULT_CONFIDENCE_THRESHOLD, DEFAULT_NMS_THRESHOLD,
    DEFAULT_MODEL_INPUT_WIDTH, DEFAULT_MODEL_INPUT_HEIGHT,
    DEFAULT_MASK_THRESHOLD, DEFAULT_SIMPLIFY_TOLERANCE,
    FALLBACK_CORNER_RATIO, FALLBACK_BOTTOM_CORNER_RATIO, FALLBACK_CORNER_SEGMENTS,
    DEFAULT_SEARCH_RADIUS_RATIO, DEFAULT_DISTANCE_WEIGHT, DEFAULT_CONFIDENCE_WEIGHT,
    FINGERTIP_INDICES, WRIST_INDEX, INDEX_MCP_INDEX, PINKY_MCP_INDEX,
    DEFAULT_SMOOTHING_WINDOW,
)

logger = get_logger(__name__)

ASSIGNMENT_STRATEGIES = ("greedy", "optimal")
PROXIMAL_JOINTS = ("DIP", "PIP")


@dataclass
class DecoderConfig:
    """検出テンソルデコード設定"""
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    nms_threshold: float = DEFAULT_NMS_THRESHOLD
    model_input_width: int = DEFAULT_MODEL_INPUT_WIDTH
    model_input_height: int = DEFAULT_MODEL_INPUT_HEIGHT
    transposed: Optional[bool] = None  # None: [F, D] を基本に自動判定, True: [1, D, F]
    
    def __post_init__(self):
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError(f"confidence_threshold must be in [0, 1]: {self.confidence_threshold}")
        if not 0.0 <= self.nms_threshold <= 1.0:
            raise ValueError(f"nms_threshold must be in [0, 1]: {self.nms_threshold}")
        if self.model_input_width <= 0 or self.model_input_height <= 0:
            raise ValueError(
                f"model input resolution must be positive: "
                f"{self.model_input_width}x{self.model_input_height}"
            )


@dataclass
class MaskConfig:
    """マスク復元・輪郭抽出設定"""
    mask_threshold: float = DEFAULT_MASK_THRESHOLD
    simplify_tolerance: float = DEFAULT_SIMPLIFY_TOLERANCE  # px
    
    # 角丸矩形フォールバック
    fallback_corner_ratio: float = FALLBACK_CORNER_RATIO
    fallback_bottom_corner_ratio: float = FALLBACK_BOTTOM_CORNER_RATIO
    fallback_corner_segments: int = FALLBACK_CORNER_SEGMENTS
    
    keep_probability_mask: bool = False  # Detection.mask に確率マップを残すか
    
    def __post_init__(self):
        if not 0.0 < self.mask_threshold < 1.0:
            raise ValueError(f"mask_threshold must be in (0, 1): {self.mask_threshold}")
        if self.simplify_tolerance < 0.0:
            raise ValueError(f"simplify_tolerance must be >= 0: {self.simplify_tolerance}")
        if self.fallback_corner_segments < 1:
            raise ValueError(f"fallback_corner_segments must be >= 1: {self.fallback_corner_segments}")


@dataclass
class MatchingConfig:
    """指先マッチング設定"""
    search_radius_ratio: float = DEFAULT_SEARCH_RADIUS_RATIO  # min(幅, 高さ) に対する比
    distance_weight: float = DEFAULT_DISTANCE_WEIGHT
    confidence_weight: float = DEFAULT_CONFIDENCE_WEIGHT
    fingertip_indices: Tuple[int, ...] = FINGERTIP_INDICES
    assignment_strategy: str = "greedy"  # "greedy" or "optimal"
    
    def __post_init__(self):
        self.fingertip_indices = tuple(self.fingertip_indices)
        if self.search_radius_ratio < 0.0:
            raise ValueError(f"search_radius_ratio must be >= 0: {self.search_radius_ratio}")
        if self.assignment_strategy not in ASSIGNMENT_STRATEGIES:
            raise ValueError(
                f"Unknown assignment strategy '{self.assignment_strategy}', "
                f"expected one of {ASSIGNMENT_STRATEGIES}"
            )


@dataclass
class OrientationConfig:
    """姿勢推定設定"""
    proximal_joint: str = "DIP"       # 長さ軸の始点: "DIP" or "PIP"
    palm_base_index: int = WRIST_INDEX
    palm_spread_indices: Tuple[int, int] = (INDEX_MCP_INDEX, PINKY_MCP_INDEX)
    pixel_space: bool = True          # ランドマークをフレーム寸法でスケールしてから基底を作る
    
    def __post_init__(self):
        self.palm_spread_indices = tuple(self.palm_spread_indices)
        if self.proximal_joint not in PROXIMAL_JOINTS:
            raise ValueError(
                f"Unknown proximal joint '{self.proximal_joint}', expected one of {PROXIMAL_JOINTS}"
            )
        if len(self.palm_spread_indices) != 2:
            raise ValueError(f"palm_spread_indices needs exactly 2 entries: {self.palm_spread_indices}")


@dataclass
class SmoothingConfig:
    """角度平滑化設定"""
    window_size: int = DEFAULT_SMOOTHING_WINDOW
    max_idle_cycles: Optional[int] = None  # None: reset() まで履歴を保持
    
    def __post_init__(self):
        if self.window_size < 1:
            raise ValueError(f"window_size must be >= 1: {self.window_size}")
        if self.max_idle_cycles is not None and self.max_idle_cycles < 1:
            raise ValueError(f"max_idle_cycles must be >= 1 or None: {self.max_idle_cycles}")


@dataclass
class NailTrackConfig:
    """プロジェクト全体設定"""
    decoder: DecoderConfig = field(default_factory=DecoderConfig)
    mask: MaskConfig = field(default_factory=MaskConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    orientation: OrientationConfig = field(default_factory=OrientationConfig)
    smoothing: SmoothingConfig = field(default_factory=SmoothingConfig)
    
    # ログ設定
    log_level: str = "INFO"
    log_format_style: str = "detailed"


_SECTION_TYPES = {
    'decoder': DecoderConfig,
    'mask': MaskConfig,
    'matching': MatchingConfig,
    'orientation': OrientationConfig,
    'smoothing': SmoothingConfig,
}


class ConfigManager:
    """設定管理クラス"""
    
    def __init__(self):
        self._config: Optional[NailTrackConfig] = None
        self._config_file_path: Optional[Path] = None
    
    def load_config(self, config_file: Optional[Path] = None) -> NailTrackConfig:
        """
        設定ファイルを読み込み
        
        Args:
            config_file: 設定ファイルパス（Noneの場合はデフォルトパスを探索）
            
        Returns:
            読み込まれた設定
        """
        if config_file is None:
            project_root = Path(__file__).parent.parent
            default_paths = [
                project_root / "nailtrack.yaml",
                project_root / "config.yaml",
                Path.home() / ".nailtrack" / "config.yaml"
            ]
            
            for path in default_paths:
                if path.exists():
                    config_file = path
                    break
        
        if config_file and Path(config_file).exists():
            config_file = Path(config_file)
            try:
                with open(config_file, 'r', encoding='utf-8') as f:
                    config_dict = yaml.safe_load(f) or {}
                
                self._config = self._dict_to_config(config_dict)
                self._config_file_path = config_file
                logger.info(f"Configuration loaded from {config_file}")
                
            except (OSError, yaml.YAMLError, TypeError, ValueError) as e:
                logger.warning(f"Failed to load config from {config_file}: {e}")
                logger.info("Using default configuration")
                self._config = NailTrackConfig()
        else:
            logger.info("No config file found, using default configuration")
            self._config = NailTrackConfig()
        
        return self._config
    
    def save_config(self, config_file: Optional[Path] = None) -> bool:
        """
        設定をファイルに保存
        
        Args:
            config_file: 保存先ファイルパス
            
        Returns:
            保存成功したかどうか
        """
        if self._config is None:
            logger.error("No configuration to save")
            return False
        
        if config_file is None:
            config_file = self._config_file_path or Path("nailtrack.yaml")
        config_file = Path(config_file)
        
        try:
            config_dict = self._config_to_dict(self._config)
            config_file.parent.mkdir(parents=True, exist_ok=True)
            
            with open(config_file, 'w', encoding='utf-8') as f:
                yaml.dump(config_dict, f, default_flow_style=False,
                          allow_unicode=True, indent=2)
            
            logger.info(f"Configuration saved to {config_file}")
            return True
            
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to save config to {config_file}: {e}")
            return False
    
    def get_config(self) -> NailTrackConfig:
        """現在の設定を取得"""
        if self._config is None:
            self._config = self.load_config()
        return self._config
    
    def set_config(self, config: NailTrackConfig) -> None:
        """設定を差し替え"""
        self._config = config
    
    def _dict_to_config(self, config_dict: Dict[str, Any]) -> NailTrackConfig:
        """辞書を設定オブジェクトに変換（未知のキーは無視）"""
        sections = {}
        for name, section_type in _SECTION_TYPES.items():
            section_dict = config_dict.get(name)
            if not isinstance(section_dict, dict):
                continue
            known = {f.name for f in fields(section_type)}
            kwargs = {k: v for k, v in section_dict.items() if k in known}
            for key in section_dict:
                if key not in known:
                    logger.debug(f"Ignoring unknown config key: {name}.{key}")
            # __post_init__ で検証される
            sections[name] = section_type(**kwargs)
        
        config = NailTrackConfig(**sections)
        if 'log_level' in config_dict:
            config.log_level = str(config_dict['log_level'])
        if 'log_format_style' in config_dict:
            config.log_format_style = str(config_dict['log_format_style'])
        return config
    
    def _config_to_dict(self, config: NailTrackConfig) -> Dict[str, Any]:
        """設定オブジェクトを辞書に変換（タプルはリストとして出力）"""
        def _plain(value):
            if isinstance(value, dict):
                return {k: _plain(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return [_plain(v) for v in value]
            return value
        
        return _plain(asdict(config))


# グローバル設定マネージャー
_config_manager: Optional[ConfigManager] = None

def get_config_manager() -> ConfigManager:
    """グローバル設定マネージャーを取得"""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager

def get_config() -> NailTrackConfig:
    """現在の設定を取得"""
    return get_config_manager().get_config()

def load_config(config_file: Optional[Path] = None) -> NailTrackConfig:
    """設定を読み込み"""
    return get_config_manager().load_config(config_file)

def save_config(config_file: Optional[Path] = None) -> bool:
    """設定を保存"""
    return get_config_manager().save_config(config_file)
