from enum import Enum


class ConversationMode(str, Enum):
    AI = "ai"
    HUMAN = "human"


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


VALID_TRANSITIONS = {
    ConversationMode.AI: [ConversationMode.HUMAN],
    ConversationMode.HUMAN: [ConversationMode.AI],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_mode: ConversationMode, to_mode: ConversationMode, reason: str | None = None):
        self.from_mode = from_mode
        self.to_mode = to_mode
        message = f"Invalid mode transition: {from_mode.value} -> {to_mode.value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


def can_transition(from_mode: ConversationMode, to_mode: ConversationMode, *, is_group: bool = False) -> bool:
    """Check if a mode change is allowed. Group conversations never run in AI mode."""
    if is_group and to_mode == ConversationMode.AI:
        return False
    return to_mode in VALID_TRANSITIONS.get(from_mode, [])


def transition(
    from_mode: ConversationMode, to_mode: ConversationMode, *, is_group: bool = False
) -> ConversationMode:
    """Perform mode change. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_mode, to_mode, is_group=is_group):
        reason = "group conversations are handled by humans" if is_group else None
        raise InvalidTransitionError(from_mode, to_mode, reason)
    return to_mode


def hand_to_human(current: ConversationMode) -> ConversationMode:
    """Agent takes over; AI stops replying."""
    return transition(current, ConversationMode.HUMAN)


def hand_to_ai(current: ConversationMode, *, is_group: bool = False) -> ConversationMode:
    """Give the conversation back to the AI responder."""
    return transition(current, ConversationMode.AI, is_group=is_group)
