from __future__ import annotations

from pathlib import Path
from string import Template

PROMPT_TEMPLATE_DIR = Path(__file__).resolve().parent / 'prompts'
SYSTEM_TEMPLATE_NAME = 'draft_system.txt'
USER_TEMPLATE_NAME = 'draft_user.txt'

_TEMPLATE_CACHE: dict[str, Template] = {}


def load_prompt_template(
    *,
    template_name: str,
    template_dir: Path = PROMPT_TEMPLATE_DIR,
    cache: dict[str, Template] | None = None,
) -> Template:
    store = _TEMPLATE_CACHE if cache is None else cache
    key = str(template_name or '').strip()
    if not key:
        raise ValueError('template_name is required')
    cached = store.get(key)
    if cached is not None:
        return cached
    safe_name = Path(key).name
    if safe_name != key:
        raise ValueError(f'invalid prompt template name: {template_name}')
    template_path = (template_dir / safe_name).resolve(strict=False)
    base_dir = template_dir.resolve(strict=False)
    try:
        template_path.relative_to(base_dir)
    except ValueError as exc:
        raise ValueError(f'invalid prompt template path: {template_name}') from exc
    template = Template(template_path.read_text(encoding='utf-8'))
    store[key] = template
    return template


def render_prompt_template(
    *,
    template_name: str,
    fields: dict[str, object],
    template_dir: Path = PROMPT_TEMPLATE_DIR,
    cache: dict[str, Template] | None = None,
) -> str:
    template = load_prompt_template(template_name=template_name, template_dir=template_dir, cache=cache)
    normalized = {str(k): ('' if v is None else str(v)) for k, v in fields.items()}
    return template.safe_substitute(normalized).rstrip('\n')


def build_system_prompt() -> str:
    return render_prompt_template(template_name=SYSTEM_TEMPLATE_NAME, fields={})


def build_user_prompt(
    *,
    assignment_title: str,
    assignment_description: str,
    policy_text: str | None,
    input_snapshot: str,
) -> str:
    """Render the drafting prompt for one submission.

    The policy block is omitted entirely when no policy text is given.
    """
    policy = str(policy_text or '').strip()
    policy_section = f'【評価ポリシー】\n{policy}\n\n' if policy else ''
    return render_prompt_template(
        template_name=USER_TEMPLATE_NAME,
        fields={
            'assignment_title': assignment_title,
            'assignment_description': assignment_description,
            'policy_section': policy_section,
            'input_snapshot': input_snapshot,
        },
    )
