from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .schemas import UsageRecord

import aiosqlite


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> str:
    return format_timestamp(datetime.now(timezone.utc))


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


DEFAULT_TEMPLATES: List[Dict[str, str]] = [
    {
        "id": "seo-basic",
        "name": "SEO記事（基本）",
        "prompt_text": """あなたはSEOに精通したベテランライターです。

【ミッション】
ユーザーの入力（お題または下書き）をもとに、
検索意図を満たす高品質な記事を執筆してください。

【執筆スタイル】
・自然な日本語（〜だよ、〜だね）で親しみやすさを重視
・AIっぽさを消すため、適度に砕けた表現や筆者の感情を15%混ぜてください
・適度に改行を入れ、スマホで読みやすい構成に
・「だから重要なのは...」「実は...」のような転換表現を活用

【禁止事項】
・「〜を解き放つ」「〜をアンロックする」などの定型表現
・過度な専門用語（必要な場合は説明を加える）
・1段落が400文字を超えることは避ける

【必須要素】
・冒頭に問いかけを1つ入れる
・実体験または失敗談を1つ盛り込む
・結論は「〜するべき」ではなく「〜もあり」と選択肢を示す形で""",
    },
    {
        "id": "fortune-telling",
        "name": "占い鑑定文（共感重視）",
        "prompt_text": """あなたはベテラン占い師です。

【ミッション】
相談者の心に寄り添い、勇気と希望を与える鑑定文を作成してください。

【鑑定スタイル】
・相談者の感情を読み取り、共感を全面に出す
・具体的な行動提案を3つ以上含める
・「あなたの強みは...」と長所をまず伝える
・最後は「応援しています」といったポジティブなメッセージで締める

【禁止事項】
・「絶対」「必ず」といった断定口調
・不安や恐怖を煽る表現
・政治・宗教・医療に関するアドバイス

【必須要素】
・相談内容の要点を冒頭で反復（相談者を認識していることを示す）
・運勢だけでなく「心持ち」についてのアドバイス
・具体的な日時や行動（例：「金曜日の夕方に...」）""",
    },
    {
        "id": "blog-casual",
        "name": "ブログ（親しみやすい）",
        "prompt_text": """あなたは日常をリアルに発信するブロガーです。

【ミッション】
読者に「あ、この人わかってるな」と思わせるような、
カジュアルで温かみのあるブログ記事を書いてください。

【執筆スタイル】
・一人称「俺」「私」を活用（統一する）
・「先日...」「実は...」と日常会話的な始まり
・絵文字は控えめに（もし使うなら1記事1-2個まで）
・読者への問いかけを中盤と終盤に1回ずつ

【禁止事項】
・高尚な言葉遣い
・「~すべき」という上から目線のアドバイス
・自慢がましい表現

【必須要素】
・失敗談を冒頭で打ち明ける
・「こうしたらうまくいった」という小さな工夫を共有
・最後は「あなたはどう？」という開かれた終わり方""",
    },
]


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS articles(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    content TEXT NOT NULL,
                    character_count INTEGER NOT NULL,
                    input_prompt TEXT NOT NULL,
                    generated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS system_prompts(
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    prompt_text TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'custom',
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS usage_records(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL DEFAULT 0,
                    output_tokens INTEGER NOT NULL DEFAULT 0,
                    cost_nano_usd INTEGER NOT NULL DEFAULT 0,
                    timestamp TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_usage_records_timestamp ON usage_records(timestamp);
                """
            )
            now = utc_now()
            for template in DEFAULT_TEMPLATES:
                await db.execute(
                    "INSERT OR IGNORE INTO system_prompts(id, name, prompt_text, category, created_at, updated_at) "
                    "VALUES (?,?,?,?,?,?)",
                    (template["id"], template["name"], template["prompt_text"], "default", now, now),
                )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def create_article(self, title: str, content: str, input_prompt: str) -> dict:
        generated_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(
                "INSERT INTO articles(title, content, character_count, input_prompt, generated_at) VALUES (?,?,?,?,?)",
                (title, content, len(content), input_prompt, generated_at),
            )
            await db.commit()
            article_id = cursor.lastrowid
        return {
            "id": article_id,
            "title": title,
            "content": content,
            "character_count": len(content),
            "input_prompt": input_prompt,
            "generated_at": generated_at,
        }

    async def get_article(self, article_id: int) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, title, content, character_count, input_prompt, generated_at FROM articles WHERE id=?",
            (article_id,),
        )
        return dict(row) if row else None

    async def delete_article(self, article_id: int) -> bool:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("DELETE FROM articles WHERE id=?", (article_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_articles(self, limit: int = 50) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, title, content, character_count, input_prompt, generated_at FROM articles "
            "ORDER BY generated_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [dict(row) for row in rows]

    async def get_system_prompt(self, prompt_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT id, name, prompt_text, category, created_at, updated_at FROM system_prompts WHERE id=?",
            (prompt_id,),
        )
        return dict(row) if row else None

    async def list_system_prompts(self) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, name, prompt_text, category, created_at, updated_at FROM system_prompts "
            "ORDER BY category = 'default' DESC, name"
        )
        return [dict(row) for row in rows]

    async def append_usage_record(self, record: UsageRecord) -> None:
        await self.execute(
            "INSERT INTO usage_records(provider, model, input_tokens, output_tokens, cost_nano_usd, timestamp) "
            "VALUES (?,?,?,?,?,?)",
            (
                record.provider,
                record.model,
                record.input_tokens,
                record.output_tokens,
                record.cost_nano_usd,
                record.timestamp,
            ),
        )

    async def query_usage_records(self, start: str, end: str) -> List[UsageRecord]:
        rows = await self.fetchall(
            "SELECT provider, model, input_tokens, output_tokens, cost_nano_usd, timestamp FROM usage_records "
            "WHERE timestamp >= ? AND timestamp <= ? ORDER BY timestamp",
            (start, end),
        )
        return [UsageRecord(**dict(row)) for row in rows]
