"""
Simple GCS helper utilities.

Este módulo fornece utilitários simples para enviar bytes ao Google Cloud
Storage (GCS), procurar objetos já existentes e montar a URL pública de um
objeto. Ele usa apenas uma parte pequena da biblioteca oficial
`google.cloud.storage`, mas com mensagens de erro mais claras caso haja
problemas de dependência ou credenciais.
"""

from __future__ import annotations

import io
from typing import Optional
from urllib.parse import quote

from doc_centralizer.core.errors import StoreError

PUBLIC_GCS_HOST = "https://storage.googleapis.com"


def _status_of(exc: Exception) -> Optional[int]:
    # google.api_core exceptions carry the HTTP status in `code`
    code = getattr(exc, "code", None)
    return code if isinstance(code, int) else None


class GCSUploader:
    """
    Classe responsável por conversar com o Google Cloud Storage.

    Ela encapsula a lógica da biblioteca oficial, deixando o resto
    do pipeline mais simples e com menos repetição. Um `client` já pronto
    pode ser injetado (útil em testes).
    """

    def __init__(self, project: Optional[str] = None, client=None):
        """
        Inicializa o cliente de conexão com o GCS.

        - project: opcionalmente define qual projeto GCP usar.
        - client: cliente já construído; se vier, nada é importado.
        """
        if client is not None:
            self.client = client
            return
        try:
            from google.cloud import storage
        except ImportError as exc:
            # Se não conseguir importar, lança erro amigável explicando
            # exatamente o que instalar.
            raise RuntimeError(
                "google-cloud-storage is required to upload to GCS. "
                "Install it with `pip install google-cloud-storage`"
            ) from exc

        # É o cliente que permite acessar buckets, blobs e fazer upload.
        self.client = storage.Client(project=project)

    def upload_bytes(
        self,
        bucket_name: str,
        data: bytes,
        dest_blob_name: str,
        content_type: Optional[str] = None,
    ) -> str:
        """
        Faz upload de dados armazenados como bytes em memória.

        - data: bytes do arquivo
        - content_type: ex: "application/pdf"

        Retorna a URI final "gs://bucket/arquivo". Falhas viram `StoreError`
        com o status HTTP quando a API informa um.
        """
        bucket = self.client.bucket(bucket_name)
        blob = bucket.blob(dest_blob_name)

        try:
            # Envia os bytes usando um "arquivo virtual" em memória.
            blob.upload_from_file(io.BytesIO(data), content_type=content_type)
        except Exception as exc:
            msg = f"Failed to upload bytes to gs://{bucket_name}/{dest_blob_name}: {exc}"
            raise StoreError(msg, status_code=_status_of(exc)) from exc

        return f"gs://{bucket_name}/{dest_blob_name}"

    def find_blob(
        self,
        bucket_name: str,
        prefix: str,
        filename: str,
        size: int,
        content_type: Optional[str] = None,
    ):
        """Procura, sob `prefix`, um blob com o mesmo nome final, tamanho e tipo."""
        try:
            blobs = self.client.list_blobs(bucket_name, prefix=prefix)
            for blob in blobs:
                if blob.name.rsplit("/", 1)[-1] != filename:
                    continue
                if blob.size != size:
                    continue
                if content_type and blob.content_type and blob.content_type != content_type:
                    continue
                return blob
        except Exception as exc:
            raise StoreError(
                f"Failed to list gs://{bucket_name}/{prefix}: {exc}",
                status_code=_status_of(exc),
            ) from exc
        return None

    @staticmethod
    def public_url(bucket_name: str, blob_name: str) -> str:
        return f"{PUBLIC_GCS_HOST}/{bucket_name}/{quote(blob_name)}"
