import pytest

from sonar_relay.exceptions import Cancelled
from sonar_relay.exchange.accumulator import ResultAccumulator, ResultFragment
from sonar_relay.exchange.cancellation import CancellationToken
from sonar_relay.exchange.events import DONE_EVENT, ProtocolEvent
from sonar_relay.exchange.merge import merge_chunk, merge_event, merge_final


def delta(text, **extra):
    return {'choices': [{'delta': {'content': text}}], **extra}


FINAL = {
    'id': 'cmpl-1',
    'choices': [{'message': {'role': 'assistant', 'content': 'Jupiter has 95 moons.'}}],
    'citations': ['https://nasa.gov/jupiter'],
    'search_results': [{'title': 'Jupiter', 'url': 'https://nasa.gov/jupiter'}],
    'usage': {'prompt_tokens': 8, 'completion_tokens': 6},
    'related_questions': ['How big is Io?'],
    'images': [{'image_url': 'https://img.example/j.png'}],
}


@pytest.mark.parametrize('deltas', [[], ['a'], ['Hel', 'lo', ', ', 'world'], ['x', 'x', 'x'], ['é', '\n', '']])
def test_content_is_concatenated_in_arrival_order(deltas):
    acc = ResultAccumulator()
    for text in deltas:
        merge_chunk(acc, delta(text))
    assert acc.content == ''.join(deltas)


def test_side_channel_fields_are_replaced_not_appended():
    acc = ResultAccumulator()
    merge_chunk(acc, delta('a', citations=['https://one.example', 'https://two.example']))
    merge_chunk(acc, delta('b', citations=['https://three.example']))

    assert acc.citations == ['https://three.example']
    assert acc.content == 'ab'


def test_absent_fields_are_left_untouched():
    acc = ResultAccumulator()
    merge_chunk(acc, {'usage': {'total_tokens': 3}, 'search_results': [{'url': 'u'}]})
    merge_chunk(acc, delta('more', citations=['c']))

    assert acc.usage == {'total_tokens': 3}
    assert acc.search_results == [{'url': 'u'}]
    assert acc.citations == ['c']


def test_null_field_counts_as_absent():
    acc = ResultAccumulator(citations=['kept'])
    merge_chunk(acc, {'citations': None, 'choices': [{'delta': {}}]})
    assert acc.citations == ['kept']


def test_empty_list_replaces():
    acc = ResultAccumulator(citations=['old'])
    merge_chunk(acc, {'citations': []})
    assert acc.citations == []


def test_reasoning_steps_inside_delta_are_recognised():
    acc = ResultAccumulator()
    merge_chunk(acc, {'choices': [{'delta': {'reasoning_steps': [{'thought': 'search'}]}}]})
    assert acc.reasoning_steps == [{'thought': 'search'}]


def test_unrecognised_field_shape_does_not_drop_the_delta():
    acc = ResultAccumulator()
    merge_chunk(acc, delta('text', citations='not-a-list', usage={'total_tokens': 1}))

    assert acc.content == 'text'
    assert acc.citations == []
    assert acc.usage == {'total_tokens': 1}


def test_final_payload_extracts_everything():
    acc = merge_final(ResultAccumulator(), FINAL)

    assert acc.content == 'Jupiter has 95 moons.'
    assert acc.citations == FINAL['citations']
    assert acc.search_results == FINAL['search_results']
    assert acc.usage == FINAL['usage']
    assert acc.related_questions == FINAL['related_questions']
    assert acc.images == FINAL['images']
    assert acc.videos == []


def test_final_payload_is_idempotent():
    once = merge_final(ResultAccumulator(), FINAL)
    twice = merge_final(merge_final(ResultAccumulator(), FINAL), FINAL)
    assert twice.snapshot() == once.snapshot()


def test_repeated_delta_is_not_idempotent():
    chunk = delta('Jupiter', citations=['c'])
    acc = ResultAccumulator()
    merge_chunk(acc, chunk)
    merge_chunk(acc, chunk)

    assert acc.content == 'JupiterJupiter'
    assert acc.citations == ['c']


def test_final_equals_single_event_carrying_everything():
    event = {
        'choices': [{'delta': {'content': FINAL['choices'][0]['message']['content']}}],
        **{k: v for k, v in FINAL.items() if k not in ('id', 'choices')},
    }
    assert merge_final(ResultAccumulator(), FINAL).snapshot() == merge_chunk(ResultAccumulator(), event).snapshot()


def test_final_without_message_content_keeps_existing_content():
    acc = ResultAccumulator(content='partial')
    merge_final(acc, {'citations': ['c']})
    assert acc.content == 'partial'
    assert acc.citations == ['c']


def test_fragment_tracks_presence():
    fragment = ResultFragment.from_chunk(delta('x', usage={'a': 1}))
    assert fragment.present_side_channels() == {'usage': {'a': 1}}
    assert fragment.content_delta == 'x'


def test_merge_event_ignores_sentinel():
    acc = ResultAccumulator(content='done')
    merge_event(acc, DONE_EVENT)
    assert acc.content == 'done'


def test_merge_event_checkpoint_rejects_cancelled_token():
    token = CancellationToken()
    acc = ResultAccumulator()
    merge_event(acc, ProtocolEvent(data=delta('a')), token)
    token.cancel()

    with pytest.raises(Cancelled):
        merge_event(acc, ProtocolEvent(data=delta('b')), token)
    assert acc.content == 'a'
