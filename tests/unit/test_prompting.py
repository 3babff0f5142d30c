from __future__ import annotations

from pathlib import Path

import pytest

from mentor_review.prompting import (
    build_system_prompt,
    build_user_prompt,
    load_prompt_template,
    render_prompt_template,
)


def test_system_prompt_describes_the_json_contract():
    prompt = build_system_prompt()
    for key in ('"result"', '"good_points"', '"improvements"', '"fail_reasons"', '"submission_issue"'):
        assert key in prompt


def test_user_prompt_without_policy_omits_policy_block():
    prompt = build_user_prompt(
        assignment_title='課題A',
        assignment_description='説明',
        policy_text='   ',
        input_snapshot='print("hi")',
    )
    assert '【課題名】\n課題A' in prompt
    assert '【評価ポリシー】' not in prompt
    assert '\n\n【提出内容】\nprint("hi")' in prompt
    assert '$' not in prompt


def test_user_prompt_with_policy_places_it_before_submission():
    prompt = build_user_prompt(
        assignment_title='課題A',
        assignment_description='説明',
        policy_text='テストコードを必須とする',
        input_snapshot='code',
    )
    assert '【評価ポリシー】\nテストコードを必須とする\n\n【提出内容】\ncode' in prompt


def test_user_prompt_keeps_dollar_signs_in_submission():
    prompt = build_user_prompt(
        assignment_title='t',
        assignment_description='d',
        policy_text=None,
        input_snapshot='echo $HOME',
    )
    assert 'echo $HOME' in prompt


def test_render_prompt_template_uses_given_directory(tmp_path: Path):
    (tmp_path / 'greeting.txt').write_text('hello $name\n\n', encoding='utf-8')
    text = render_prompt_template(template_name='greeting.txt', fields={'name': 'mentor'}, template_dir=tmp_path, cache={})
    assert text == 'hello mentor'


def test_load_prompt_template_rejects_path_traversal(tmp_path: Path):
    with pytest.raises(ValueError):
        load_prompt_template(template_name='../secret.txt', template_dir=tmp_path, cache={})
    with pytest.raises(ValueError):
        load_prompt_template(template_name='', template_dir=tmp_path, cache={})
