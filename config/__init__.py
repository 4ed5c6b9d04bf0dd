from .config_loader import Config, SectionProxy, config_loader as config

__all__ = ['config', 'Config', 'SectionProxy']
