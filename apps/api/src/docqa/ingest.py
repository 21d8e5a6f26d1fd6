from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from docqa.config import get_settings
from docqa.db import get_engine
from docqa.services.documents import SqlMetadataStore, register_document
from docqa.services.factory import build_document_store, build_ingestion_pipeline


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="docqa-ingest",
        description="Register local documents and ingest them synchronously into the vector store",
    )
    parser.add_argument(
        "paths",
        nargs="+",
        help="PDF, .txt or .md files to ingest",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    engine = get_engine()
    document_store = build_document_store(settings)
    metadata_store = SqlMetadataStore(engine)
    pipeline = build_ingestion_pipeline(engine, settings)

    failures = 0
    for raw_path in args.paths:
        path = Path(raw_path)
        try:
            document = register_document(
                file_name=path.name,
                data=path.read_bytes(),
                document_store=document_store,
                metadata_store=metadata_store,
                max_bytes=settings.max_upload_bytes,
            )
            summary = pipeline.ingest(document)
        except Exception as exc:
            failures += 1
            print(f"[docqa-ingest] failed path={path} error={exc}", file=sys.stderr, flush=True)
            continue

        print(
            "[docqa-ingest] completed "
            f"path={path} "
            f"document_id={summary.document_id} "
            f"chunks={summary.chunk_count}",
            flush=True,
        )

    if failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
