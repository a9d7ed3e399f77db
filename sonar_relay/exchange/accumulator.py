"""Result accumulator and the fragment record merged into it."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sonar_relay.config.log import get_logger

logger = get_logger(__name__)

SIDE_CHANNEL_FIELDS = (
    'citations',
    'search_results',
    'usage',
    'reasoning_steps',
    'images',
    'videos',
    'related_questions',
)


class ResultAccumulator(BaseModel):
    """Current best-known answer of one exchange.

    Deltas append to ``content`` and a final payload replaces it. Every
    side-channel field is replaced wholesale when a fragment carries it.
    """

    model_config = ConfigDict(validate_assignment=False)

    content: str = ''
    citations: List[Any] = Field(default_factory=list)
    search_results: List[Any] = Field(default_factory=list)
    usage: Dict[str, Any] = Field(default_factory=dict)
    reasoning_steps: List[Any] = Field(default_factory=list)
    images: List[Any] = Field(default_factory=list)
    videos: List[Any] = Field(default_factory=list)
    related_questions: List[Any] = Field(default_factory=list)
    async_status: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        return self.model_dump()


class ResultFragment(BaseModel):
    """Fields extracted from one upstream event or final payload.

    A field is present when it is in ``model_fields_set``; anything else is
    absent and leaves the accumulator untouched.
    """

    model_config = ConfigDict(frozen=True)

    content_delta: Optional[str] = None
    content: Optional[str] = None
    citations: Optional[List[Any]] = None
    search_results: Optional[List[Any]] = None
    usage: Optional[Dict[str, Any]] = None
    reasoning_steps: Optional[List[Any]] = None
    images: Optional[List[Any]] = None
    videos: Optional[List[Any]] = None
    related_questions: Optional[List[Any]] = None

    def present_side_channels(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in SIDE_CHANNEL_FIELDS if name in self.model_fields_set}

    @classmethod
    def _from_fields(cls, fields: Dict[str, Any]) -> 'ResultFragment':
        try:
            return cls(**fields)
        except ValidationError as exc:
            # Drop fields whose shape we do not recognise instead of losing the whole event
            bad = {str(error['loc'][0]) for error in exc.errors() if error.get('loc')}
            logger.warning('Ignoring unrecognised result fields', fields=sorted(bad))
            return cls(**{k: v for k, v in fields.items() if k not in bad})

    @classmethod
    def from_chunk(cls, chunk: Dict[str, Any]) -> 'ResultFragment':
        """Extract a fragment from a streamed ``chat.completion.chunk`` object."""
        delta = _first_choice(chunk).get('delta') or {}
        if not isinstance(delta, dict):
            delta = {}
        fields: Dict[str, Any] = {}
        if delta.get('content'):
            fields['content_delta'] = str(delta['content'])
        fields.update(_side_channels(chunk))
        if delta.get('reasoning_steps') is not None:
            fields['reasoning_steps'] = delta['reasoning_steps']
        return cls._from_fields(fields)

    @classmethod
    def from_final(cls, payload: Dict[str, Any]) -> 'ResultFragment':
        """Extract a fragment from a complete non-streaming response."""
        message = _first_choice(payload).get('message') or {}
        fields: Dict[str, Any] = {}
        if isinstance(message, dict) and message.get('content') is not None:
            fields['content'] = str(message['content'])
        fields.update(_side_channels(payload))
        return cls._from_fields(fields)


def _first_choice(data: Dict[str, Any]) -> Dict[str, Any]:
    choices = data.get('choices')
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _side_channels(data: Dict[str, Any]) -> Dict[str, Any]:
    return {name: data[name] for name in SIDE_CHANNEL_FIELDS if data.get(name) is not None}
