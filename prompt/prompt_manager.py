"""
Prompt management: game-master rules, JSON repair instruction, per-turn user message.

A `story_system.txt` / `repair_system.txt` placed next to this module overrides
the built-in instruction of the same role.
"""

from pathlib import Path
from typing import Dict, List, Optional

from models.turn_models import TOTAL_ROUNDS, HistoryEntry, TurnRequest

STORY_KEYS = ["image_prompt", "character_name", "scene_description", "options", "is_game_over"]
STORY_KEY_LIST = "、".join(STORY_KEYS)

NO_TOOLS_SUFFIX = "\n\nIMPORTANT: Do not call any tools. Reply with a single JSON object only."
JSON_ONLY_SUFFIX = "\n\nIMPORTANT: Reply with ONLY a JSON object, no extra text."

DEFAULT_STORY_SYSTEM = f"""你是“SHNU Playbrary”的游戏主持人（Game Master）。
规则：
1）游戏总共且必须严格为 {TOTAL_ROUNDS} 回合。
2）叙事与文风要尽量贴近原书作者的文学风格（故事输出为中文）。
3）第 {TOTAL_ROUNDS} 回合必须以“巨大的悬念/危机”结束。
4）character_name 一旦确立，后续回合必须保持一致；若因剧情需要更名/身份揭露，必须在 scene_description 中说明原因与变化。
5）scene_description 末尾要自然引出抉择点（危机/诱因/信息差），为 A/B/C 提供动机。
6）options 必须为 3 个互斥且可执行的具体动作，使用动词开头，每条不超过 15 字；禁止“继续/随便/不知道/以上都行/随机/跳过”等空泛选项出现；避免信息重复。
7）你必须且只能输出一个 JSON 对象（不要 markdown、不要多余说明、不要代码块）。
8）JSON 对象必须且只能包含以下键（严格一致），并且键顺序必须为：
   - image_prompt: string（允许中文；只写画面视觉元素（人物/场景/动作/构图/光影/风格）；不写规则/限制/否定提示词，如“不要/禁止/无文字/不包含”等）
   - character_name: string（中文）
   - scene_description: string（中文）
   - options: 长度为 3 的数组，每项为 {{label: 'A'|'B'|'C', text: string（中文）}}；如果 is_game_over=true 则可以返回 []
   - is_game_over: boolean
9）不得包含任何其它键。"""

DEFAULT_REPAIR_SYSTEM = f"""你是一个严格的 JSON 结构转换器。
你必须且只能返回一个 JSON 对象，并且键名必须严格为：{STORY_KEY_LIST}（顺序必须保持一致）。
不得有任何其它键；不要 markdown；不要多余文字。
scene_description 末尾要自然引出抉择点（危机/诱因/信息差），为 A/B/C 提供动机。
options 必须为 3 个互斥且可执行的具体动作，使用动词开头，每条不超过 15 字；禁止“继续/随便/不知道/以上都行/随机/跳过”等空泛选项；除非 is_game_over=true，此时 options 可以为 []。
如果输入缺少 options 或 options 不合法，请根据场景内容补全并生成 3 个合理选项。
image_prompt 允许中文，包含视觉描述。"""


def stringify_history(history: List[HistoryEntry]) -> str:
    """Flatten past choices into one line, or the sentinel "无" (none)"""
    if not history:
        return "无"

    parts = []
    for entry in history:
        label = entry.label or "?"
        text = entry.text.strip() or "（无）"
        parts.append(f"第{entry.round + 1}回合｜选择：{label}｜结果：{text}")
    return "；".join(parts)


class PromptManager:
    def __init__(self, prompts_dir: Optional[Path] = None):
        self.prompts_dir = prompts_dir or Path(__file__).parent
        self.prompts = self._load_prompts()

    def _load_prompts(self) -> Dict[str, str]:
        return {
            "story": self._read_prompt_file("story_system.txt", DEFAULT_STORY_SYSTEM),
            "repair": self._read_prompt_file("repair_system.txt", DEFAULT_REPAIR_SYSTEM),
        }

    def _read_prompt_file(self, name: str, default: str) -> str:
        file_path = self.prompts_dir / name
        if file_path.exists():
            return file_path.read_text(encoding="utf-8").strip() or default
        return default

    def get_story_prompt(self) -> str:
        return self.prompts["story"]

    def get_repair_prompt(self) -> str:
        return self.prompts["repair"]

    @staticmethod
    def harden(system: str, reason: str) -> str:
        """Stricter variant of a system instruction for the single retry"""
        suffix = NO_TOOLS_SUFFIX if reason == "empty" else JSON_ONLY_SUFFIX
        return f"{system}{suffix}"

    def create_user_prompt(self, request: TurnRequest) -> str:
        if request.round == 0:
            protagonist = ""
            if request.protagonist_name:
                protagonist = f"主角名为“{request.protagonist_name}”。"
            return (
                f"请根据书籍《{request.book_title}》开启一场角色扮演且沉浸式的互动故事。"
                f"现在是第 1 回合（共 {TOTAL_ROUNDS} 回合）。{protagonist}请设定主角，并描写开场场景。"
            )

        is_final = request.round >= TOTAL_ROUNDS - 1
        final_hint = ""
        if is_final:
            final_hint = "这是最后一回合：请以巨大的悬念/危机收束（巨大反转或迫在眉睫的危机），但不要给出最终结局。"
        protagonist = ""
        if request.protagonist_name:
            protagonist = f"主角：{request.protagonist_name}。"

        return (
            f"我们正在进行一场基于《{request.book_title}》的互动故事游戏。"
            f"现在是第 {request.round + 1} 回合（共 {TOTAL_ROUNDS} 回合）。{protagonist}"
            f"用户选择了：“{request.choice or '未选择'}”。请继续推进剧情。"
            f"历史：{stringify_history(request.history)}。{final_hint}"
        )

    @staticmethod
    def create_repair_user_prompt(raw_content: str) -> str:
        return f"请将下面内容转换为符合要求的 JSON 结构。\n\n内容：\n{raw_content}"


_prompt_manager = None


def get_prompt_manager() -> PromptManager:
    """Process-wide prompt manager"""
    global _prompt_manager
    if _prompt_manager is None:
        _prompt_manager = PromptManager()
    return _prompt_manager
