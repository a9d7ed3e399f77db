"""Generation settings and the request payload built from them."""

import re
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TOKENS_LIMIT = 128000
DEEP_RESEARCH_MODEL = 'sonar-deep-research'

_LIST_SEPARATOR = re.compile(r'[\n,]+')


def parse_list(value: Any) -> List[str]:
    """Split a comma/newline separated string into trimmed, non-empty items."""
    if value is None:
        return []
    if isinstance(value, str):
        items = _LIST_SEPARATOR.split(value)
    else:
        items = [str(item) for item in value]
    return [item.strip() for item in items if item and item.strip()]


def clamp(value: float, lower: int, upper: int) -> int:
    return int(min(upper, max(lower, value)))


class WebSearchOptions(BaseModel):
    search_context_size: Optional[str] = None
    search_type: Optional[str] = None


class MediaOverrides(BaseModel):
    return_videos: bool = False


class MediaResponse(BaseModel):
    overrides: MediaOverrides = Field(default_factory=MediaOverrides)


class GenerationSettings(BaseModel):
    """Caller-side generation and search settings.

    Every field has a default. Fields left at their inactive value (None,
    False, empty list) are not sent upstream.
    """

    model_config = ConfigDict(extra='ignore')

    model: str = 'sonar'
    search_mode: str = 'web'
    stream: bool = True
    stream_mode: str = 'full'
    max_tokens: Optional[int] = None
    reasoning_effort: Optional[str] = None
    return_images: bool = False
    return_related_questions: bool = False
    enable_search_classifier: bool = False
    disable_search: bool = False
    safe_search: bool = True
    web_search_options: WebSearchOptions = Field(default_factory=WebSearchOptions)
    search_domain_filter: List[str] = Field(default_factory=list)
    search_language_filter: List[str] = Field(default_factory=list)
    search_recency_filter: Optional[str] = None
    image_domain_filter: List[str] = Field(default_factory=list)
    image_format_filter: List[str] = Field(default_factory=list)
    media_response: MediaResponse = Field(default_factory=MediaResponse)
    language_preference: Optional[str] = None
    system_prompt: str = ''
    deep_research_async: bool = True

    @field_validator('search_domain_filter', 'search_language_filter', 'image_domain_filter', 'image_format_filter', mode='before')
    @classmethod
    def _split_filters(cls, value: Any) -> List[str]:
        return parse_list(value)

    @field_validator('max_tokens', mode='before')
    @classmethod
    def _blank_max_tokens(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def uses_async_job(self) -> bool:
        return self.model == DEEP_RESEARCH_MODEL and self.deep_research_async


class RequestPayload(BaseModel):
    """Body of a chat completion request. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    model: str
    messages: List[Dict[str, Any]]
    search_mode: str
    stream: bool
    stream_mode: str
    safe_search: bool

    max_tokens: Optional[int] = None
    reasoning_effort: Optional[str] = None
    language_preference: Optional[str] = None
    return_images: Optional[bool] = None
    return_related_questions: Optional[bool] = None
    enable_search_classifier: Optional[bool] = None
    disable_search: Optional[bool] = None
    search_domain_filter: Optional[List[str]] = None
    search_language_filter: Optional[List[str]] = None
    search_recency_filter: Optional[str] = None
    image_domain_filter: Optional[List[str]] = None
    image_format_filter: Optional[List[str]] = None
    web_search_options: Optional[Dict[str, str]] = None
    media_response: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', exclude_none=True)


class AsyncSubmission(BaseModel):
    """Body of an async job submission: the chat payload wrapped under ``request``."""

    model_config = ConfigDict(frozen=True)

    request: RequestPayload

    def to_dict(self) -> Dict[str, Any]:
        return {'request': self.request.to_dict()}


def _wire_message(message: Dict[str, Any]) -> Dict[str, Any]:
    if message.get('role') == 'system':
        return dict(message)
    content = message.get('content')
    if isinstance(content, list):
        return {'role': message.get('role'), 'content': content}
    return {'role': message.get('role'), 'content': str(content or '')}


def build_payload(settings: GenerationSettings, messages: Sequence[Dict[str, Any]]) -> RequestPayload:
    """Build the upstream request body from settings and prior conversation messages."""
    wire_messages: List[Dict[str, Any]] = []
    if settings.system_prompt and settings.system_prompt.strip():
        wire_messages.append({'role': 'system', 'content': settings.system_prompt.strip()})
    wire_messages.extend(_wire_message(m) for m in messages)

    fields: Dict[str, Any] = {
        'model': settings.model,
        'messages': wire_messages,
        'search_mode': settings.search_mode,
        'stream': bool(settings.stream),
        'stream_mode': settings.stream_mode or 'full',
        'safe_search': bool(settings.safe_search),
    }

    if settings.max_tokens is not None:
        fields['max_tokens'] = clamp(settings.max_tokens, 1, MAX_TOKENS_LIMIT)
    if settings.reasoning_effort:
        fields['reasoning_effort'] = settings.reasoning_effort
    if settings.language_preference:
        fields['language_preference'] = settings.language_preference

    for flag in ('return_images', 'return_related_questions', 'enable_search_classifier', 'disable_search'):
        if getattr(settings, flag):
            fields[flag] = True

    for name in ('search_domain_filter', 'search_language_filter', 'image_domain_filter', 'image_format_filter'):
        values = getattr(settings, name)
        if values:
            fields[name] = list(values)
    if settings.search_recency_filter:
        fields['search_recency_filter'] = settings.search_recency_filter

    web_search_options = settings.web_search_options.model_dump(exclude_none=True)
    web_search_options = {k: v for k, v in web_search_options.items() if v}
    if web_search_options:
        fields['web_search_options'] = web_search_options

    if settings.media_response.overrides.return_videos:
        fields['media_response'] = {'overrides': {'return_videos': True}}

    return RequestPayload(**fields)
