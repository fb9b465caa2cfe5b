"""Localized strings for user-visible text.

Covers error strings returned in place of a stream, the cancellation notice,
and the scaffolding wrapped around injected documents, OCR text and search
history. Positional ``{}`` placeholders are filled with str.format().
"""

from __future__ import annotations

DEFAULT_LOCALE = "en"

MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "model_connect_failed": "Model connection failed: {}",
        "unexpected_error": "Something went wrong: {}",
        "backend_call_failed": "Error calling the model API: {}",
        "generation_stopped": "\n\n---\n**Incomplete:** generation stopped by user",
        "question": "Question: ",
        "answer": "Answer: ",
        "user_document": "User document",
        "content": "Content",
        "documents_header": (
            "Below are the documents uploaded by the user. Each document is wrapped "
            "as [User document X begin]...[User document X end]; use whatever parts you need."
        ),
        "user_input": "User input",
        "image": "Image",
        "ocr_result": "OCR result",
        "search_system_prompt": (
            "You are a helpful assistant. Answer the user's question using the web search "
            "results below. Each result is numbered [N]; cite the numbers you rely on. "
            "If the results do not contain the answer, say so and answer from your own knowledge."
        ),
        "search_results": "Web search results",
        "conversation_history": "Recent conversation",
        "user_question": "User question",
    },
    "zh": {
        "model_connect_failed": "模型连接失败:{}",
        "unexpected_error": "出错了: {}",
        "backend_call_failed": "调用模型接口时出错了: {}",
        "generation_stopped": "\n\n---\n**内容不完整:** 用户手动停止生成",
        "question": "问题: ",
        "answer": "回答: ",
        "user_document": "用户文档",
        "content": "内容",
        "documents_header": (
            "以下是用户上传的文档内容，每个文档内容都是[用户文档 X begin]...[用户文档 X end]格式的，"
            "你可以根据需要选择其中的内容。"
        ),
        "user_input": "用户输入的内容",
        "image": "图片",
        "ocr_result": "OCR解析结果",
        "search_system_prompt": (
            "你是一个乐于助人的助手。请根据下面的网络搜索结果回答用户的问题，每条结果都以[N]编号，"
            "回答时请注明引用的编号。如果搜索结果中没有答案，请说明并根据你自己的知识回答。"
        ),
        "search_results": "网络搜索结果",
        "conversation_history": "最近的对话",
        "user_question": "用户的问题",
    },
}


def lang(key: str, *args: object, locale: str = DEFAULT_LOCALE) -> str:
    """Look up a message and fill its placeholders.

    Unknown locales fall back to English; unknown keys return the key itself
    so a missing translation never breaks a turn.
    """
    catalog = MESSAGES.get(locale) or MESSAGES[DEFAULT_LOCALE]
    template = catalog.get(key) or MESSAGES[DEFAULT_LOCALE].get(key, key)
    if args:
        return template.format(*args)
    return template


class Translator:
    """Locale-bound wrapper around lang() handed to components."""

    def __init__(self, locale: str = DEFAULT_LOCALE) -> None:
        self.locale = locale

    def __call__(self, key: str, *args: object) -> str:
        return lang(key, *args, locale=self.locale)
