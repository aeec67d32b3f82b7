"""Phrase lists used to classify model text in rounds without tool calls.

These are data: bump PHRASE_LIST_VERSION whenever a list changes so
classification regressions can be traced to a list revision.
"""

import re

PHRASE_LIST_VERSION = "2026.1"

# Text announcing more work ("let me check", "接下来将...").
INCOMPLETE_PHRASES: tuple[str, ...] = (
    # Chinese
    r"现在.{0,6}(为您|帮您|给您|查看|执行|检查)",
    r"继续.{0,4}(为您|帮您|查看|执行|检查|获取)",
    r"(让我|我来|我将|我会).{0,6}(查看|执行|检查|获取|点击|打开|选择)",
    r"(正在|开始|准备).{0,4}(执行|查看|检查|获取)",
    r"(接下来|然后|之后|随后).{0,4}(将|会|要)",
    r"(马上|立即|即将|稍后|待会).{0,4}(为您|执行|查看)",
    r"首先.{0,8}(然后|接着|之后)",
    r"(第一步|下一步|接下来)",
    r"(帮您|为您|给您).{0,4}(查看|执行|检查|获取|操作)",
    r"(我需要|需要).{0,4}(查看|执行|检查|获取)",
    r"(先|首先|第一).{0,4}(看看|检查|执行)",
    r"下面.{0,4}(将|会|要|是)",
    r"(等一下|稍等|请稍候)",
    r"(让我|我来|我将|我会).{0,30}(使用|调用|执行|查询|访问|输入)",
    r"重新.{0,10}(查询|搜索|获取|执行|尝试|加载|刷新)",
    r"(继续|再次).{0,10}(查询|搜索|获取|执行|尝试)",
    r"让我再",
    r"尝试.{0,10}(查询|搜索|执行|获取)",
    r"检查一下",
    r"(好的|好嘞|好啊|没问题|明白|收到)[，, ]?(我来|我帮|我给|让我)",
    # English
    r"\b(let me|i('ll| will| am going to))\b",
    r"\b(now i|first i|next i)\b",
    r"\b(going to|about to|starting to|ready to|prepared to)\b",
    r"\b(will now|shall now|let's)\b",
    r"\b(proceed(ing)? to|continu(e|ing) to)\b",
    r"\b(step \d)\b",
    r"\b(hold on|stand by|just a moment)\b",
    r"\b(i need to|i have to)\b",
    r"\b(looking (at|into|for))\b",
    r"\b(try again|one more time|once more|second try)\b",
    r"\b(need|have|should|must) to (try|check|search|find)\b",
    r"\battempt(ing)? to\b",
    r"\b(look into|follow up on|check (on|for|into))\b",
    r"\bwait(ing)? for\b",
)

# Text that wraps up ("in summary", "任务完成").
SUMMARY_PHRASES: tuple[str, ...] = (
    # Chinese
    r"(已经|已|均已).{0,4}(完成|结束|执行完)",
    r"(总结|汇总|综上|以上是|如上)",
    r"任务.{0,4}(完成|结束)",
    r"操作.{0,4}(完成|成功)",
    r"(至此|到此|目前).{0,4}(完成|结束)",
    r"(全部|所有|均).{0,4}(完成|执行完|结束)",
    r"以上.{0,4}(就是|便是|为)",
    r"(结果|答案|信息).{0,4}(如下|在此|在这里)",
    r"请.{0,4}(查收|参考)",
    # English
    r"\b(completed?|finished|done|all set)\b",
    r"\b(in summary|to summarize|here('s| is) (the|a) summary)\b",
    r"\b(task (is )?completed?|successfully (completed?|executed?))\b",
    r"\b(that's (all|it)|we('re| are) done)\b",
    r"\b(above (is|are)|here (is|are) the results?)\b",
    r"\b(wrap(ping)? up|conclud(e|ing)|in conclusion)\b",
    r"\bhere('s| is) (the|your) (result|answer|information)\b",
    r"\bfor your (reference|review)\b",
    r"\beverything (is )?(done|complete|set)\b",
    r"\byou('re| are) (all )?set\b",
    r"\blet me know if you need anything else\b",
    r"\bfeel free to ask\b",
)

# Text naming a tool instead of calling it.
TOOL_MENTION_PHRASES: tuple[str, ...] = (
    r"\bmcp_\w+",
    r"MCP.{0,10}(工具|浏览器|服务)",
    r"使用.{0,10}工具.{0,10}(访问|查询|获取)",
    r"\bwrite_to_terminal\b",
    r"\bread_terminal_output\b",
    r"\bfocus_terminal\b",
    r"\bget_terminal_list\b",
    r"\basync_terminal_command\b",
    r"\bcheck_task_status\b",
)

# Tool-call markup written as plain text.
FAKE_TOOL_CALL_MARKERS: tuple[str, ...] = (
    r"<invoke\b",
    r"</invoke>",
    r"<parameter\b",
    r"<function_calls>",
)


def compile_phrases(phrases: tuple[str, ...]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(phrase, re.IGNORECASE) for phrase in phrases)


INCOMPLETE_PATTERNS = compile_phrases(INCOMPLETE_PHRASES)
SUMMARY_PATTERNS = compile_phrases(SUMMARY_PHRASES)
TOOL_MENTION_PATTERNS = compile_phrases(TOOL_MENTION_PHRASES)
FAKE_TOOL_CALL_PATTERNS = compile_phrases(FAKE_TOOL_CALL_MARKERS)


def matches_any(patterns: tuple[re.Pattern[str], ...], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)
