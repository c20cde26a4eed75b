from .config_loader import Config, SectionProxy, config_loader as config
from .utils import StrategyConfig, get_config_section, merge_strategy, strategy_for

__all__ = [
    'Config',
    'SectionProxy',
    'StrategyConfig',
    'config',
    'get_config_section',
    'merge_strategy',
    'strategy_for',
]
