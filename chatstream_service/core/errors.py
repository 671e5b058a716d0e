class ChatstreamError(Exception):
    """Base class for errors raised by chatstream_service"""


class ContentRewriteError(ChatstreamError, ValueError):
    """An overwrite would not preserve the existing message content as a prefix"""


class CardTransitionError(ChatstreamError, ValueError):
    """A tool-call card was asked to move to a status it cannot reach"""

    def __init__(self, card_id: str, current: str, target: str):
        super().__init__(f"card {card_id}: cannot move from {current} to {target}")
        self.card_id = card_id
        self.current = current
        self.target = target


class ConfigError(ChatstreamError, ValueError):
    """Configuration could not be read or names something that cannot be loaded"""
