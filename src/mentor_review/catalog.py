from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Assignment:
    code: str
    title: str
    description: str


DEFAULT_ASSIGNMENTS: tuple[Assignment, ...] = (
    Assignment(
        code='9-6',
        title='【提出課題①】LengthBasedExampleSelector',
        description=(
            'この課題では、LengthBasedExampleSelectorを実装します。\n'
            '\n'
            '【要件】\n'
            '1. 入力文字列の長さに基づいて適切な例を選択する\n'
            '2. 最大トークン数を超えないように例を選択する\n'
            '3. 選択された例を返す\n'
            '\n'
            '【評価基準】\n'
            '- 要件1〜3をすべて満たしていること\n'
            '- コードが動作すること'
        ),
    ),
)


class AssignmentCatalog:
    def __init__(self, assignments: tuple[Assignment, ...] | list[Assignment] | None = None):
        items = DEFAULT_ASSIGNMENTS if assignments is None else assignments
        self._items: dict[str, Assignment] = {}
        for item in items:
            code = str(item.code or '').strip()
            if not code or code in self._items:
                continue
            self._items[code] = item

    def list_assignments(self) -> list[Assignment]:
        return [self._items[code] for code in sorted(self._items)]

    def get(self, code: str | None) -> Assignment | None:
        key = str(code or '').strip()
        if not key:
            return None
        return self._items.get(key)
