"""
Offline mock story templates (used when no text provider key is configured)
"""

import random
import re
from enum import Enum
from typing import Any, Dict, List, Optional

from models.turn_models import TOTAL_ROUNDS


class SceneTone(Enum):
    MYSTERY = "悬疑"
    ADVENTURE = "冒险"
    DRAMA = "人情"


BOOK_CONFIG = {
    "明朝那些事儿": {"tone": SceneTone.DRAMA, "protagonist": "朱重八"},
    "红楼梦": {"tone": SceneTone.DRAMA, "protagonist": "贾宝玉"},
    "百年孤独": {"tone": SceneTone.MYSTERY, "protagonist": "奥雷里亚诺"},
    "杀死一只知更鸟": {"tone": SceneTone.DRAMA, "protagonist": "斯库特"},
    "第七天": {"tone": SceneTone.MYSTERY, "protagonist": "杨飞"},
}

_TITLE_PATTERN = re.compile(r"《(.+?)》")
_ROUND_PATTERN = re.compile(r"第\s*(\d+)\s*回合")
_PROTAGONIST_PATTERN = re.compile(r"主角(?:名为“|：)([^”。]+)")


class MockStoryGenerator:
    """Builds a story payload in the exact key order the game master prompt demands"""

    def generate_story(self, user_prompt: str) -> Dict[str, Any]:
        book_title = self._match(_TITLE_PATTERN, user_prompt) or "无名之书"
        round_number = int(self._match(_ROUND_PATTERN, user_prompt) or 1)
        config = BOOK_CONFIG.get(book_title, {"tone": SceneTone.ADVENTURE, "protagonist": "无名旅人"})
        protagonist = self._match(_PROTAGONIST_PATTERN, user_prompt) or config["protagonist"]
        tone = config["tone"].value

        return {
            "image_prompt": self._image_prompt(book_title, protagonist, round_number),
            "character_name": protagonist,
            "scene_description": self._scene(book_title, protagonist, tone, round_number),
            "options": self._options(tone),
            "is_game_over": False,
        }

    @staticmethod
    def _match(pattern: re.Pattern, text: str) -> Optional[str]:
        found = pattern.search(text)
        return found.group(1).strip() if found else None

    def _scene(self, book_title: str, protagonist: str, tone: str, round_number: int) -> str:
        if round_number <= 1:
            return (
                f"《{book_title}》的书页在指尖翻动，墨香化作薄雾。{protagonist}睁开眼，"
                f"发现自己站在故事开头的那条街上，远处传来熟悉又陌生的钟声。"
                f"一封没有署名的信塞进了{protagonist}的口袋，信上只写着：天黑之前做出选择。"
            )

        if round_number >= TOTAL_ROUNDS:
            return (
                f"所有线索在这一刻汇聚，{protagonist}终于看清了《{book_title}》背后的真相，"
                f"可脚下的地面却开始崩塌。那个一直在暗处注视的人，正缓缓转过身来……"
            )

        return (
            f"{protagonist}的选择让故事偏离了原本的轨迹，{tone}的气息越来越浓。"
            f"这是第 {round_number} 回合，风里夹着纸灰，有人在巷口低声呼唤{protagonist}的名字。"
            f"时间不多了，下一步必须立刻决定。"
        )

    def _options(self, tone: str) -> List[Dict[str, str]]:
        if tone == SceneTone.MYSTERY.value:
            texts = ["检查信封上的火漆", "追上巷口的黑影", "翻阅随身的旧书"]
        elif tone == SceneTone.DRAMA.value:
            texts = ["拜访府中的长辈", "悄悄离开人群", "写信向故人求助"]
        else:
            texts = ["攀上最近的钟楼", "询问路边的摊贩", "沿河岸向东走"]

        return [{"label": label, "text": text} for label, text in zip("ABC", texts)]

    def _image_prompt(self, book_title: str, protagonist: str, round_number: int) -> str:
        lighting = random.choice(["黄昏逆光", "清晨薄雾", "烛火摇曳", "月光冷色"])
        return f"{protagonist}站在《{book_title}》的世界里，第{round_number}幕场景，{lighting}，中景构图"
