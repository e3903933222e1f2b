# src/mintkit/storage/publisher.py
from __future__ import annotations

"""Content publication: asset + metadata to IPFS with a degraded fallback.

Publication runs an ordered list of strategies and returns the first success.
Every strategy reports failure as UploadError; the synthetic strategy (last,
when degraded mode is allowed) cannot fail, so publication is total.

Synthetic results are always tagged degraded=True. They are never presented
as genuine persistence.
"""

import logging
import mimetypes
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from mintkit.config import PublicationConfig
from mintkit.errors import IntegrityError, InvalidIdentifierFormat, UploadError, ValidationError
from mintkit.storage.gateways import GatewayProbeResult, GatewayResolver, gateway_url
from mintkit.storage.http import Transport
from mintkit.storage.pinata import PinataClient
from mintkit.storage.synthetic import synthetic_cid
from mintkit.util.canon import canon_json
from mintkit.util.cid import cid_from_uri, protocol_uri, require_cid
from mintkit.util.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("mintkit.storage.publisher")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class AssetFile:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def stem(self) -> str:
        return PurePath(self.filename or "").stem

    @property
    def media_type(self) -> str:
        """Declared content type, or the one implied by the filename when the declared one is generic."""
        declared = (self.content_type or "").split(";")[0].strip().lower()
        if declared and declared != "application/octet-stream":
            return declared
        guessed, _ = mimetypes.guess_type(self.filename or "")
        return (guessed or declared or "application/octet-stream").lower()


@dataclass(frozen=True)
class AssetUploadResult:
    content_identifier: str
    canonical_url: str
    alternate_urls: Tuple[str, ...]
    protocol_uri: str
    degraded: bool
    provider: str = ""
    size_bytes: int = 0

    def to_json(self) -> Json:
        return {
            "content_identifier": self.content_identifier,
            "canonical_url": self.canonical_url,
            "alternate_urls": list(self.alternate_urls),
            "protocol_uri": self.protocol_uri,
            "degraded": self.degraded,
            "provider": self.provider,
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class PublishedBundle:
    image: AssetUploadResult
    metadata: AssetUploadResult
    document: Json = field(default_factory=dict)

    @property
    def protocol_uri(self) -> str:
        return self.metadata.protocol_uri

    @property
    def degraded(self) -> bool:
        return self.image.degraded or self.metadata.degraded


class PublicationStrategy(Protocol):
    name: str

    def publish_file(self, file: AssetFile) -> AssetUploadResult: ...

    def publish_json(self, obj: Json, *, name: str) -> AssetUploadResult: ...


def _result_for(cid: str, gateways: Sequence[str], *, degraded: bool, provider: str, size: int) -> AssetUploadResult:
    urls = [gateway_url(g, cid) for g in gateways]
    return AssetUploadResult(
        content_identifier=cid,
        canonical_url=urls[0],
        alternate_urls=tuple(urls[1:]),
        protocol_uri=protocol_uri(cid),
        degraded=degraded,
        provider=provider,
        size_bytes=size,
    )


class PinataStrategy:
    name = "pinata"

    def __init__(self, client: PinataClient, gateways: Sequence[str]) -> None:
        self.client = client
        self.gateways = list(gateways)

    def publish_file(self, file: AssetFile) -> AssetUploadResult:
        res = self.client.pin_file(
            filename=file.filename,
            content=file.content,
            content_type=file.content_type,
            name=file.filename,
            keyvalues={"kind": "asset", "content_type": file.content_type},
        )
        return _result_for(res.cid, self.gateways, degraded=False, provider=self.name, size=file.size)

    def publish_json(self, obj: Json, *, name: str) -> AssetUploadResult:
        res = self.client.pin_json(obj, name=name, keyvalues={"kind": "metadata"})
        return _result_for(res.cid, self.gateways, degraded=False, provider=self.name, size=len(canon_json(obj)))


class SyntheticStrategy:
    """Offline stand-in. Identifier derives from (seed, timestamp); nothing is stored."""

    name = "synthetic"

    def __init__(self, gateways: Sequence[str], *, clock: Callable[[], int] = _now_ms) -> None:
        self.gateways = list(gateways)
        self._clock = clock

    def publish_file(self, file: AssetFile) -> AssetUploadResult:
        cid = synthetic_cid(file.filename or "upload", self._clock())
        return _result_for(cid, self.gateways, degraded=True, provider=self.name, size=file.size)

    def publish_json(self, obj: Json, *, name: str) -> AssetUploadResult:
        raw = canon_json(obj)
        cid = synthetic_cid(f"{name}:{raw}", self._clock())
        return _result_for(cid, self.gateways, degraded=True, provider=self.name, size=len(raw))


class ContentPublisher:
    def __init__(
        self,
        strategies: Sequence[PublicationStrategy],
        resolver: GatewayResolver,
        *,
        probe_on_upload: bool = False,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        if not strategies:
            raise ValueError("at least one publication strategy is required")
        self.strategies: List[PublicationStrategy] = list(strategies)
        self.resolver = resolver
        self.probe_on_upload = bool(probe_on_upload)
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        cfg: PublicationConfig,
        *,
        transport: Optional[Transport] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> "ContentPublisher":
        strategies: List[PublicationStrategy] = []
        if cfg.pinning_enabled:
            client = PinataClient(
                jwt=cfg.pinata_jwt,
                api_base=cfg.pinata_api_base,
                timeout_s=cfg.upload_timeout_s,
                transport=transport,
            )
            strategies.append(PinataStrategy(client, cfg.gateways))
        if cfg.allow_degraded or not strategies:
            strategies.append(SyntheticStrategy(cfg.gateways, clock=clock))
        resolver = GatewayResolver(cfg.gateways, timeout_s=cfg.gateway_timeout_s, transport=transport)
        return cls(strategies, resolver, clock=clock)

    @property
    def gateways(self) -> List[str]:
        return self.resolver.gateways

    def _first_success(self, op: str, fn: Callable[[PublicationStrategy], AssetUploadResult]) -> AssetUploadResult:
        last: Optional[UploadError] = None
        for strategy in self.strategies:
            try:
                res = fn(strategy)
            except UploadError as e:
                last = e
                log_event(
                    _log,
                    "publication_strategy_failed",
                    level=logging.WARNING,
                    op=op,
                    strategy=strategy.name,
                    kind=e.kind.value,
                    reason=e.reason,
                )
                continue
            if res.degraded:
                log_event(_log, "publication_degraded", level=logging.WARNING, op=op, cid=res.content_identifier)
            return res
        assert last is not None
        raise last

    def _with_reachable_url(self, res: AssetUploadResult) -> AssetUploadResult:
        if res.degraded or not self.probe_on_upload:
            return res
        url = self.resolver.resolve(res.content_identifier)
        alternates = tuple(u for u in (res.canonical_url, *res.alternate_urls) if u != url)
        return AssetUploadResult(
            content_identifier=res.content_identifier,
            canonical_url=url,
            alternate_urls=alternates,
            protocol_uri=res.protocol_uri,
            degraded=res.degraded,
            provider=res.provider,
            size_bytes=res.size_bytes,
        )

    def upload_asset(self, file: AssetFile) -> AssetUploadResult:
        if file is None or not file.content:
            raise ValidationError("empty_file", {"filename": getattr(file, "filename", "")})
        res = self._first_success("upload_asset", lambda s: s.publish_file(file))
        log_event(_log, "asset_uploaded", cid=res.content_identifier, degraded=res.degraded, provider=res.provider)
        return self._with_reachable_url(res)

    def upload_metadata(self, metadata: Json, *, name: str = "metadata.json") -> AssetUploadResult:
        if not isinstance(metadata, dict) or not metadata:
            raise ValidationError("empty_metadata", {})
        res = self._first_success("upload_metadata", lambda s: s.publish_json(metadata, name=name))
        log_event(_log, "metadata_uploaded", cid=res.content_identifier, degraded=res.degraded, provider=res.provider)
        return res

    def build_metadata(
        self,
        image: AssetUploadResult,
        file: AssetFile,
        name: str,
        description: str,
        attributes: Optional[List[Json]] = None,
    ) -> Json:
        now_ms = self._clock()
        upload_date = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        attrs: List[Json] = [
            {"trait_type": "Upload Date", "value": upload_date},
            {"trait_type": "File Type", "value": file.content_type},
            {"trait_type": "File Size (KB)", "value": round(file.size / 1024)},
            {"trait_type": "Upload Timestamp", "value": now_ms},
            {"trait_type": "Storage Provider", "value": image.provider or "unknown"},
            {"trait_type": "IPFS CID", "value": image.content_identifier},
            {"trait_type": "Gateway", "value": image.canonical_url.split("/ipfs/")[0] if "/ipfs/" in image.canonical_url else image.canonical_url},
        ]
        if image.degraded:
            attrs.append({"trait_type": "Degraded", "value": "Yes"})
        attrs.extend(attributes or [])
        return {
            "name": name,
            "description": description,
            "image": image.canonical_url,
            "external_url": image.canonical_url,
            "attributes": attrs,
        }

    @staticmethod
    def check_bundle_integrity(image: AssetUploadResult, document: Json, metadata: Optional[AssetUploadResult] = None) -> None:
        """Raise IntegrityError unless the document points at `image` and the two identifiers differ."""
        image_url = str(document.get("image") or "")
        try:
            embedded = cid_from_uri(image_url)
        except InvalidIdentifierFormat as e:
            raise IntegrityError("metadata_image_not_a_content_url", {"image": image_url[:200]}) from e
        if embedded != image.content_identifier:
            raise IntegrityError(
                "metadata_image_identifier_mismatch",
                {"expected": image.content_identifier, "embedded": embedded},
            )
        if metadata is not None and metadata.content_identifier == image.content_identifier:
            raise IntegrityError("image_and_metadata_identifier_collision", {"cid": image.content_identifier})

    def publish_bundle(
        self,
        file: AssetFile,
        name: str,
        description: str,
        *,
        attributes: Optional[List[Json]] = None,
    ) -> PublishedBundle:
        image = self.upload_asset(file)
        document = self.build_metadata(image, file, name, description, attributes)
        self.check_bundle_integrity(image, document)
        stem = file.stem or "token"
        metadata = self.upload_metadata(document, name=f"{stem}-metadata.json")
        self.check_bundle_integrity(image, document, metadata)
        return PublishedBundle(image=image, metadata=metadata, document=document)

    def upload_bundle(self, file: AssetFile, name: str, description: str) -> str:
        return self.publish_bundle(file, name, description).protocol_uri

    def resolve_reachable_gateway(self, cid: str, *, cancel: Optional[threading.Event] = None) -> str:
        return self.resolver.resolve(require_cid(cid), cancel=cancel)

    def probe_gateways(self, cid: str, *, cancel: Optional[threading.Event] = None) -> List[GatewayProbeResult]:
        return self.resolver.probe_all(require_cid(cid), cancel=cancel)
