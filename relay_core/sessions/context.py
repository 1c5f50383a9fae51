from typing import List, Optional

from relay_core.config.settings import settings
from relay_core.domain.models import ConversationLog, Message
from relay_core.prompts import load_system_prompt


def build_context_window(
    history: ConversationLog,
    max_context: Optional[int] = None,
    preamble: Optional[str] = None,
) -> List[Message]:
    """[system 提示词] + 最近 max_context 条历史。

    上限按消息条数计算，不做 token 估算；提示词不参与截断。
    """
    limit = settings.max_context_messages if max_context is None else max_context
    system = Message(role="system", content=preamble if preamble is not None else load_system_prompt())
    recent = [m for m in history if m.role != "system"][-limit:] if limit > 0 else []
    return [system] + recent
