"""Vision-language GUI agent: prediction parser, model adapter and agent loop."""

from guiagent.action_parser import parse_prediction
from guiagent.agent import AgentConfig, GUIAgent
from guiagent.geometry import parse_box_to_screen_coords
from guiagent.model import ModelConfig, UITarsModel

__all__ = [
    "AgentConfig",
    "GUIAgent",
    "ModelConfig",
    "UITarsModel",
    "parse_box_to_screen_coords",
    "parse_prediction",
]
