from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .models import AllergyEntry, ChatTurn

HISTORY_TURNS = 6

BASE_SYSTEM_PROMPT = """あなたは親切で会話的、論理的に説明できる学校食堂のAIアシスタントです。自然で流暢な会話を心がけてください。

主な役割：
- メニュー、営業時間、予約について質問に答える
- アレルギー情報について質問に答える（アレルギー情報は以下を参照）
- 学習のお手伝いとして数学、理科、英語などの教育関連の質問にも親切に答える
- 一般的な質問や雑談にも自然に対応する
{allergy_info}

回答のスタイル：
- 明確で、例を入れつつ、過剰に長くしすぎない
- ユーザーの発言意図を汲み取り、文脈を理解して自然な会話を続ける
- 宿題の完全な答えを提供するのではなく、学習のヒントや解説を提供する
- 親切で丁寧、かつ自然な口調で対応する
- 同じ質問でも、会話の文脈に応じて異なる表現で答える"""

USER_LABEL = "ユーザー"
ASSISTANT_LABEL = "アシスタント"


def render_allergy_info(table: Optional[List[AllergyEntry]]) -> str:
    if not table:
        return ""
    lines = ["", "", "【アレルギー情報】"]
    lines.extend(f"- {e.menu}：{'、'.join(e.allergens)}" for e in table)
    lines.append("")
    lines.append("※アレルギーに関する質問には、この情報を基に正確に回答してください。")
    return "\n".join(lines)


def build_system_prompt(allergy_table: Optional[List[AllergyEntry]] = None) -> str:
    return BASE_SYSTEM_PROMPT.format(allergy_info=render_allergy_info(allergy_table))


def coerce_history(raw: Optional[Iterable[Any]]) -> List[ChatTurn]:
    """
    Accept ChatTurn instances or plain dicts; entries without a valid role or
    a non-empty content are dropped.
    """
    out: List[ChatTurn] = []
    for item in raw or []:
        if isinstance(item, ChatTurn):
            turn = item
        elif isinstance(item, dict):
            role = item.get("role")
            content = item.get("content")
            if role not in ("user", "assistant") or not isinstance(content, str):
                continue
            turn = ChatTurn(role=role, content=content)
        else:
            continue
        if turn.content:
            out.append(turn)
    return out


def recent_history(history: Optional[List[ChatTurn]], turns: int = HISTORY_TURNS) -> List[ChatTurn]:
    h = list(history or [])
    if turns <= 0:
        return []
    return h[-turns:]


def build_chat_messages(system_prompt: Optional[str], history: List[ChatTurn], message: str) -> List[Dict[str, str]]:
    """Chat-completion style message list (OpenAI, Groq, Ollama)."""
    messages: List[Dict[str, str]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in history:
        messages.append({"role": turn.role, "content": turn.content})
    messages.append({"role": "user", "content": message})
    return messages


def _label(turn: ChatTurn) -> str:
    return USER_LABEL if turn.role == "user" else ASSISTANT_LABEL


def build_gemini_prompt(system_prompt: str, history: List[ChatTurn], message: str) -> str:
    """
    Single-text prompt:

        <system prompt>

        ユーザー: ...
        アシスタント: ...
        ユーザー: <message>
        アシスタント:
    """
    out = system_prompt + "\n\n"
    for turn in history:
        out += f"{_label(turn)}: {turn.content}\n"
    out += f"{USER_LABEL}: {message}\n{ASSISTANT_LABEL}:"
    return out


def build_prompt_with_history(system_prompt: str, history: List[ChatTurn], message: str) -> str:
    """Plain text-generation prompt (Hugging Face inference)."""
    out = system_prompt + "\n\n"
    if history:
        out += "会話履歴:\n"
        for turn in history:
            out += f"{_label(turn)}: {turn.content}\n"
        out += "\n"
    out += f"現在の質問: {message}\n回答:"
    return out
