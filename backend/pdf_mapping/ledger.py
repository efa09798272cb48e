"""
Generated-document storage.

`OutputStore` keeps the rendered bytes on local disk or in S3 and caches
recently produced documents in memory. `FileDocumentLedger` records one
immutable `GeneratedDocument` per successful generation as a JSON file.
"""

from __future__ import annotations

import copy
import datetime as dt
import json
import logging
import uuid
from pathlib import Path
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cachetools import TTLCache

from .exceptions import NotFoundError, PersistenceError
from .models import DataRecord, GeneratedDocument

logger = logging.getLogger(__name__)

S3_SCHEME = "s3://"


class OutputStore:
    """Stores generated PDF bytes and hands back an opaque output reference."""

    def __init__(
        self,
        base_dir: Path,
        s3_bucket: Optional[str] = None,
        s3_prefix: str = "pdf-mapping/",
        s3_client=None,
        cache_size: int = 64,
        cache_ttl: int = 3600,
    ):
        self.generated_dir = Path(base_dir) / "generated"
        self.generated_dir.mkdir(parents=True, exist_ok=True)
        self.s3_bucket = s3_bucket
        self.s3_prefix = s3_prefix
        self.s3 = s3_client
        if self.s3_bucket and self.s3 is None:
            self.s3 = boto3.client("s3")
        self._cache: TTLCache = TTLCache(maxsize=cache_size, ttl=cache_ttl)

    def put(self, document_id: str, filename: str, pdf_bytes: bytes) -> str:
        safe_filename = filename or f"{document_id}.pdf"
        if self.s3_bucket:
            key = f"{self.s3_prefix}{document_id}/{safe_filename}"
            try:
                self.s3.put_object(Bucket=self.s3_bucket, Key=key, Body=pdf_bytes, ContentType="application/pdf")
            except (BotoCoreError, ClientError) as exc:
                raise PersistenceError(f"Upload of {key} failed: {exc}") from exc
            output_ref = f"{S3_SCHEME}{self.s3_bucket}/{key}"
        else:
            target = self.generated_dir / f"{document_id}.pdf"
            try:
                with target.open("wb") as f:
                    f.write(pdf_bytes)
            except OSError as exc:
                raise PersistenceError(f"Could not write {target}: {exc}") from exc
            output_ref = str(target)
        self._cache[output_ref] = pdf_bytes
        logger.info("Stored %s (%d bytes)", output_ref, len(pdf_bytes))
        return output_ref

    def get(self, output_ref: str) -> bytes:
        cached = self._cache.get(output_ref)
        if cached is not None:
            return cached

        if output_ref.startswith(S3_SCHEME):
            bucket, _, key = output_ref[len(S3_SCHEME):].partition("/")
            if self.s3 is None:
                self.s3 = boto3.client("s3")
            try:
                obj = self.s3.get_object(Bucket=bucket, Key=key)
                pdf_bytes = obj["Body"].read()
            except ClientError as exc:
                raise NotFoundError(f"Output {output_ref} not found: {exc}") from exc
            except BotoCoreError as exc:
                raise PersistenceError(f"Download of {output_ref} failed: {exc}") from exc
        else:
            path = Path(output_ref)
            if not path.is_file():
                raise NotFoundError(f"Output {output_ref} not found")
            pdf_bytes = path.read_bytes()

        self._cache[output_ref] = pdf_bytes
        return pdf_bytes

    def delete(self, output_ref: str) -> None:
        self._cache.pop(output_ref, None)
        if output_ref.startswith(S3_SCHEME):
            bucket, _, key = output_ref[len(S3_SCHEME):].partition("/")
            if self.s3 is None:
                self.s3 = boto3.client("s3")
            try:
                self.s3.delete_object(Bucket=bucket, Key=key)
            except (BotoCoreError, ClientError) as exc:
                raise PersistenceError(f"Delete of {output_ref} failed: {exc}") from exc
        else:
            try:
                Path(output_ref).unlink(missing_ok=True)
            except OSError as exc:
                raise PersistenceError(f"Could not remove {output_ref}: {exc}") from exc
        logger.info("Removed %s", output_ref)


class FileDocumentLedger:
    """Append-only record of generated documents under `documents/<id>.json`."""

    def __init__(self, base_dir: Path):
        self.documents_dir = Path(base_dir) / "documents"
        self.documents_dir.mkdir(parents=True, exist_ok=True)

    def create_document_record(
        self,
        template_id: str,
        record: DataRecord,
        output_ref: str,
        filename: str,
        document_id: Optional[str] = None,
    ) -> str:
        document = GeneratedDocument(
            id=document_id or uuid.uuid4().hex,
            template_id=template_id,
            record=copy.deepcopy(dict(record)),
            output_ref=output_ref,
            filename=filename,
            created_at=dt.datetime.utcnow().isoformat() + "Z",
        )
        path = self.documents_dir / f"{document.id}.json"
        try:
            # "x" refuses to overwrite an existing record
            with path.open("x", encoding="utf-8") as f:
                json.dump(document.to_dict(), f, indent=2, ensure_ascii=False)
        except FileExistsError as exc:
            raise PersistenceError(f"Document {document.id} already recorded") from exc
        except OSError as exc:
            raise PersistenceError(f"Could not record document {document.id}: {exc}") from exc
        logger.info("Recorded document %s for template %s", document.id, template_id)
        return document.id

    def get_document(self, document_id: str) -> GeneratedDocument:
        path = self.documents_dir / f"{document_id}.json"
        if not document_id or not path.is_file():
            raise NotFoundError(f"Document '{document_id}' not found")
        try:
            with path.open("r", encoding="utf-8") as f:
                return GeneratedDocument.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as exc:
            raise PersistenceError(f"Error loading document {document_id}: {exc}") from exc

    def list_documents(self, template_id: Optional[str] = None) -> List[GeneratedDocument]:
        documents = [self.get_document(p.stem) for p in self.documents_dir.glob("*.json")]
        if template_id:
            documents = [d for d in documents if d.template_id == template_id]
        return sorted(documents, key=lambda d: d.created_at, reverse=True)
