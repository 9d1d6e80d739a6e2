"""起動中のバックエンドに対して画像の再生成を実行する CLI。

FastAPI とは独立したスタンドアロンスクリプトです。RegenerationCoordinator を
使ってバッチ (4 枚ずつ) で再生成し、必要なら結果をプロセスに保存します。

Usage:
    # プロジェクトルートから実行
    uv run python scripts/regenerate_image.py --file-id abc123 --prompt "grayscale" --count 4
    uv run python scripts/regenerate_image.py --file-id abc123 --style berserk --count 8 \
        --save-process proc-1 --select 0 2
    uv run python scripts/regenerate_image.py --source scene.png --prompt "grayscale" \
        --cut cut-1 --save-process proc-1
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

# スタンドアロン実行時に backend/ をパスに追加
_BACKEND_PATH = Path(__file__).parent.parent / "backend"
if str(_BACKEND_PATH) not in sys.path:
    sys.path.insert(0, str(_BACKEND_PATH))

from toonstudio.core.config import get_settings
from toonstudio.core.errors import MissingSourceError
from toonstudio.models.generation import GenerationRequest, GenerationSlot, ProviderMode, SlotState
from toonstudio.services.coordinator import RegenerationCoordinator
from toonstudio.services.prompts import STYLE_OPTIONS, find_style
from toonstudio.services.transport import HttpRegenerationTransport, RegenerationTransport


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="画像をバッチで再生成します。")
    parser.add_argument("--file-id", help="再生成元ファイルの ID。")
    parser.add_argument("--source", type=Path, help="ファイル ID の代わりに使うローカル画像。")
    parser.add_argument("--prompt", help="スタイルプロンプト。--style と併用すると --style を上書きします。")
    parser.add_argument(
        "--style",
        choices=[style.id for style in STYLE_OPTIONS],
        help="定義済みスタイル。",
    )
    parser.add_argument("--count", type=int, default=1, help="生成枚数 (デフォルト 1)。")
    parser.add_argument(
        "--provider",
        choices=[mode.value for mode in ProviderMode],
        default=ProviderMode.auto.value,
        help="auto は偶数番目を Gemini、奇数番目を Seedream に振り分けます。",
    )
    parser.add_argument("--reference", action="append", default=[], help="参考画像の ID (複数指定可)。")
    parser.add_argument("--sheet", action="append", default=[], help="キャラクターシートの ID (複数指定可)。")
    parser.add_argument("--save-process", help="結果を保存するプロセス ID。")
    parser.add_argument("--cut", help="保存先のカット ID。--source と --save-process を併用する場合は必須。")
    parser.add_argument(
        "--select",
        type=int,
        nargs="*",
        help="保存する結果の番号 (省略時は成功したすべて)。",
    )
    parser.add_argument("--api-url", help="バックエンドの URL (デフォルトは API_BASE_URL)。")
    return parser


def build_request(args: argparse.Namespace) -> GenerationRequest:
    """引数から GenerationRequest を組み立てる。

    Raises:
        ValueError: プロンプトもスタイルも指定されていない場合。
    """
    prompt = args.prompt
    style_id = args.style
    if not prompt and style_id:
        style = find_style(style_id)
        prompt = style.prompt if style else None
    if not prompt:
        raise ValueError("--prompt か --style のどちらかを指定してください")

    source_image: Optional[bytes] = args.source.read_bytes() if args.source else None
    source_mime_type = "image/jpeg" if args.source and args.source.suffix.lower() in (".jpg", ".jpeg") else "image/png"

    return GenerationRequest(
        prompt=prompt,
        count=args.count,
        provider=ProviderMode(args.provider),
        source_file_id=args.file_id,
        source_image=source_image,
        source_mime_type=source_mime_type,
        reference_image_ids=args.reference,
        character_sheet_ids=args.sheet,
        style_id=style_id,
    )


def format_slot(slot: GenerationSlot) -> str:
    head = f"[{slot.index}] {slot.provider.value:<8} {slot.state.value:<9}"
    if slot.state is SlotState.completed and slot.result is not None:
        location = slot.result.file_url or f"{len(slot.result.image_data or b'')} bytes inline"
        return f"{head} {location}"
    if slot.error is not None:
        return f"{head} {slot.error.code}: {slot.error.message}"
    return head


async def run(args: argparse.Namespace, transport: Optional[RegenerationTransport] = None) -> int:
    """再生成 (と保存) を実行し、終了コードを返す。"""
    settings = get_settings()
    owned = transport is None
    if transport is None:
        transport = HttpRegenerationTransport(args.api_url or settings.api_base_url)

    coordinator = RegenerationCoordinator(transport, batch_size=settings.batch_size)
    try:
        if args.source and args.save_process and not args.cut:
            print("エラー: --source の結果を保存するには --cut を指定してください", file=sys.stderr)
            return 2
        try:
            pending = coordinator.submit_regeneration(build_request(args))
        except (MissingSourceError, ValueError) as exc:
            print(f"エラー: {exc}", file=sys.stderr)
            return 2

        slots = await pending
        for slot in slots:
            print(format_slot(slot))

        if args.save_process:
            wanted = set(args.select) if args.select else None
            for slot in slots:
                if slot.state is SlotState.completed and (wanted is None or slot.index in wanted):
                    coordinator.select_slot(slot.id, True)
            outcome = await coordinator.persist_selected(
                args.save_process, cut_id=args.cut, source_file_id=args.file_id
            )
            print(f"保存: 成功 {outcome.succeeded} / 失敗 {outcome.failed} / スキップ {outcome.skipped}")
            for error in outcome.errors.values():
                print(f"  {error.code}: {error.message}", file=sys.stderr)
            if outcome.failed:
                return 1
    finally:
        if owned:
            await transport.aclose()

    return 1 if coordinator.has_failures else 0


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
