"""
Text normalization shared by the extraction and compaction heuristics.

Python's `re` has no `\\p{L}`; `[^\\W\\d_]` (word characters that are neither
digits nor underscore) stands in for "any letter".
"""
import re

LETTER = re.compile(r"[^\W\d_]")
NON_WORD = re.compile(r"[^\w\s]|_")

CODE_FENCE = re.compile(r"```.*?```", re.DOTALL)
INLINE_CODE = re.compile(r"`[^`]*`")
HEADING = re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE)
LIST_MARKER = re.compile(r"^\s*[-*]\s+", re.MULTILINE)
URL = re.compile(r"\bhttps?://\S+", re.IGNORECASE)
ARROWS = re.compile(r"[↓→←⇒⇐]")
RULE_RUN = re.compile(r"[-=]{3,}")
PIPE_RUN = re.compile(r"\|{2,}")
CODE_PUNCT = re.compile(r"[{}()\[\];]")
HSPACE = re.compile(r"[ \t\f\v]+")
SPACE = re.compile(r"\s+")
PICTOGRAPH = re.compile("[\U0001F000-\U0001FAFF\u2600-\u27BF\u2B00-\u2BFF\uFE0F\u200D]")

STOPWORDS = frozenset("""
the this that with from have will your you and for are was were been into about than then them they
what when where which who why how can could should would also just like make made some more most very
only not does did done it its our we i me my a an to of in on at as is be or vs versus option
avec pour dans comme plus moins aussi mais donc alors tres très tout toute tous toutes cette ceux cela
ceci etre être avoir faire fait faut
const function return await async import export json javascript typescript chrome extension manifest
popup content contentjs checksum sha256 messages message snapshot console window document storage
localstorage indexeddb mutationobserver selector selectors scraper scraping script api endpoint
class chars tokens token prompt markdown regex pattern patterns
question questions cours course file files fichier fichiers repo repository github pdf docs document
documents user users assistant
""".split())


def tokenize(text: str) -> list:
    return [t for t in NON_WORD.sub(" ", (text or "").lower()).split() if t]


def strip_code(text: str, keep_lines: bool = False) -> str:
    """Drop fenced blocks and inline code, then collapse whitespace."""
    t = CODE_FENCE.sub(" ", str(text or ""))
    t = INLINE_CODE.sub(" ", t)
    if keep_lines:
        return "\n".join(HSPACE.sub(" ", ln).strip() for ln in t.split("\n")).strip()
    return SPACE.sub(" ", t).strip()


def _looks_like_code_line(line: str) -> bool:
    letters = len(LETTER.findall(line))
    if len(line) >= 60 and letters / max(1, len(line)) < 0.55:
        return True
    return len(CODE_PUNCT.findall(line)) >= 8


def normalize_for_extraction(text: str) -> str:
    """Code-free, markdown-free single-line text; code-like lines are dropped."""
    t = strip_code(text, keep_lines=True)
    t = HEADING.sub(" ", t)
    t = LIST_MARKER.sub(" ", t)
    t = URL.sub(" ", t)
    t = ARROWS.sub(" ", t)
    t = RULE_RUN.sub(" ", t)
    t = PIPE_RUN.sub(" ", t)
    kept = []
    for line in re.split(r"\n+", t):
        s = line.strip()
        if s and not _looks_like_code_line(s):
            kept.append(s)
    return SPACE.sub(" ", " ".join(kept)).strip()


def excerpt(text: str, max_len: int = 80) -> str:
    """Clean, bounded excerpt of real text: no code, headings or pictographs."""
    t = CODE_FENCE.sub(" ", str(text or ""))
    t = INLINE_CODE.sub(" ", t)
    t = HEADING.sub(" ", t)
    t = PICTOGRAPH.sub("", t)
    t = SPACE.sub(" ", t).strip()
    if not t:
        return ""
    n = max(24, int(max_len or 80))
    return t[: max(0, n - 3)] + "..." if len(t) > n else t


QUOTED_ECHO = re.compile(r"^\s*(vous\s+avez\s+dit\s*:|you\s+said\s*:)\s*", re.IGNORECASE)
ROLE_ECHO = re.compile(r"^\s*(user|utilisateur)\s*:\s*", re.IGNORECASE)


def strip_quoted_prefix(text: str) -> str:
    """Remove UI echoes such as "You said:" or "User:" at the start of a message."""
    t = str(text or "").strip()
    if not t:
        return ""
    t = QUOTED_ECHO.sub("", t, count=1)
    t = ROLE_ECHO.sub("", t, count=1)
    return t.strip()


SHELL_PROMPT = re.compile(r"^\s*(\$|#|>|\w+@[\w.-]+).*%?\s")
CODE_KEYWORD = re.compile(r"\b(import|export|const|let|var|function|class|def|async|await|return)\b")
STACK_TRACE = re.compile(r"(Traceback|Exception|Error:|stack|VM\d+:)", re.IGNORECASE)
SYMBOL_RUN = re.compile(r"[{}\[\];]{6,}")
LOCAL_PATH = re.compile(r"/Users/|\\Users\\|/home/|C:\\\\")


def looks_like_code_or_logs(text: str, check_paths: bool = True, ignore_case: bool = False) -> bool:
    """Approximate filter for code, shell sessions, stack traces and log dumps."""
    t = str(text or "").strip()
    if not t:
        return False
    if max(len(ln) for ln in re.split(r"\r?\n", t)) > 240:
        return True
    if SHELL_PROMPT.search(t):
        return True
    flags = re.IGNORECASE if ignore_case else 0
    if re.search(CODE_KEYWORD.pattern, t, flags):
        return True
    if STACK_TRACE.search(t):
        return True
    if SYMBOL_RUN.search(t):
        return True
    if check_paths and LOCAL_PATH.search(t):
        return True
    return False


def normalized_key(text: str) -> str:
    return SPACE.sub(" ", strip_quoted_prefix(text).lower()).strip()


def split_sentences(text: str) -> list:
    return re.split(r"(?<=[.!?])\s+", text)
