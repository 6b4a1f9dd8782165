"""
File repository connector.

Treats a directory tree as a source: every file becomes a row, and files are
grouped by type into `<type>_files` structures (pdf_files, text_files, ...).
Directory scans run in a worker thread so large trees don't block the loop.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
import asyncio
import logging

import pandas as pd

from core.exceptions import ExtractionError, IncrementalSyncError
from connectors.base import DataSourceConnector, OperationContext, get_bool_param, get_int_param, get_param
from connectors.incremental import OffsetToken, TrackingState, token_matches
from schemas.connector import ConnectionParameter, ConnectorCapabilities, ConnectorMetadata, ValidationResult
from schemas.extraction import DataStructureInfo, ExtractionParameters, ExtractionResult, FieldInfo
from schemas.values import Value, to_transport

logger = logging.getLogger(__name__)

FILE_TYPES = {
    ".pdf": "PDF",
    ".docx": "Document", ".doc": "Document", ".rtf": "Document",
    ".txt": "Text", ".md": "Text", ".csv": "Text",
    ".html": "HTML", ".htm": "HTML",
    ".jpg": "Image", ".jpeg": "Image", ".png": "Image", ".gif": "Image", ".bmp": "Image",
    ".xlsx": "Spreadsheet", ".xls": "Spreadsheet",
    ".pptx": "Presentation", ".ppt": "Presentation",
    ".xml": "Data", ".json": "Data",
}

FILE_CATEGORIES = {
    ".pdf": "Document", ".docx": "Document", ".doc": "Document", ".rtf": "Document",
    ".txt": "Document", ".md": "Document",
    ".html": "Markup", ".htm": "Markup", ".xml": "Markup", ".json": "Markup",
    ".jpg": "Image", ".jpeg": "Image", ".png": "Image", ".gif": "Image", ".bmp": "Image",
    ".xlsx": "Data", ".xls": "Data", ".csv": "Data",
    ".pptx": "Presentation", ".ppt": "Presentation",
}

TEXT_EXTENSIONS = (".txt", ".md", ".csv", ".json", ".xml", ".html", ".htm")
TRACKING_FIELD = "modified"

FILE_FIELDS = [
    FieldInfo("path", "string", is_nullable=False, description="Full file path", is_primary_key=True),
    FieldInfo("filename", "string", is_nullable=False, description="File name"),
    FieldInfo("size", "integer", description="File size in bytes"),
    FieldInfo("created", "datetime", description="Creation date"),
    FieldInfo("modified", "datetime", description="Last modified date"),
    FieldInfo("content", "string", description="File content"),
    FieldInfo("extension", "string", description="File extension"),
    FieldInfo("category", "string", description="File category"),
]


def file_type(extension: str) -> str:
    return FILE_TYPES.get((extension or "").lower(), "Other")


def file_category(extension: str) -> str:
    return FILE_CATEGORIES.get((extension or "").lower(), "Other")


def structure_name(extension: str) -> str:
    return f"{file_type(extension).lower()}_files"


def normalize_extension(extension: str) -> str:
    extension = (extension or "").strip().lower()
    if extension and not extension.startswith("."):
        extension = "." + extension
    return extension


def parse_extensions(value: Optional[str]) -> List[str]:
    """'pdf, .txt,CSV' -> ['.pdf', '.txt', '.csv']"""
    if not value:
        return []
    return [normalize_extension(part) for part in value.split(",") if part.strip()]


def _timestamp(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    parsed = Value.of(value).as_timestamp()
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_int(value: Any) -> Optional[int]:
    number = Value.of(value).as_number()
    return int(number) if number is not None else None


class FileRepositoryConnector(DataSourceConnector):
    """Connector for local or mounted file repositories"""

    CONNECTION_ID_PREFIX = "file"

    def __init__(self, listener=None, transformation_engine=None):
        super().__init__(listener=listener, transformation_engine=transformation_engine)
        self._root: Optional[Path] = None
        self._recursive = True
        self._extensions: List[str] = []
        self._max_file_size_mb = 10

    @classmethod
    def describe_metadata(cls) -> ConnectorMetadata:
        return ConnectorMetadata(
            id="file-repository-connector",
            name="File Repository Connector",
            source_type="FileRepository",
            version="1.0.0",
            description="Connector for extracting documents from file repositories",
            author="Ingestion Team",
            categories=["FileSystem", "Documents"],
            capabilities=ConnectorCapabilities(
                supports_incremental=True,
                supports_advanced_filtering=True,
                supports_schema_discovery=True,
                supports_preview=True,
                max_concurrent_extractions=3,
                supported_authentications=["none"],
                supported_source_types=["filerepository", "filesystem", "files"],
            ),
        )

    @classmethod
    def describe_parameters(cls) -> List[ConnectionParameter]:
        return [
            ConnectionParameter(
                "rootPath", "Root Path", "Root directory of the repository", is_required=True, order=1,
            ),
            ConnectionParameter(
                "includeSubDirectories", "Include Subdirectories", "Scan subdirectories recursively",
                type="boolean", default_value="true", order=2,
            ),
            ConnectionParameter(
                "fileExtensions", "File Extensions", "Comma separated extensions to include (e.g. pdf,txt)",
                order=3,
            ),
            ConnectionParameter(
                "maxFileSizeMB", "Max File Size (MB)", "Files larger than this are skipped",
                type="integer", default_value="10", order=4,
            ),
        ]

    def _create_probe(self) -> "FileRepositoryConnector":
        return FileRepositoryConnector()

    def _validate_specific(self, params: Dict[str, Any], result: ValidationResult):
        root = get_param(params, "rootPath")
        if root is not None and not Path(root).is_dir():
            result.add_error("rootPath", f"Root path does not exist: {root}")
        size = get_param(params, "maxFileSizeMB")
        if size is not None:
            try:
                if int(size) <= 0:
                    result.add_error("maxFileSizeMB", "Max file size must be greater than 0")
            except ValueError:
                # already reported by the integer check
                pass

    async def _open_connection(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self._root = Path(get_param(params, "rootPath")).resolve()
        self._recursive = get_bool_param(params, "includeSubDirectories", True)
        self._extensions = parse_extensions(get_param(params, "fileExtensions"))
        self._max_file_size_mb = get_int_param(params, "maxFileSizeMB", 10)
        return {
            "server_version": "filesystem",
            "root_path": str(self._root),
            "recursive": self._recursive,
        }

    async def _close_connection(self):
        self._root = None

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _scan_sync(self, extension: Optional[str] = None) -> List[Dict[str, Any]]:
        pattern = "**/*" if self._recursive else "*"
        max_bytes = self._max_file_size_mb * 1024 * 1024
        entries = []
        for path in sorted(self._root.glob(pattern)):
            if not path.is_file():
                continue
            suffix = path.suffix.lower()
            if extension and suffix != extension:
                continue
            if not extension and self._extensions and suffix not in self._extensions:
                continue
            stat = path.stat()
            if max_bytes > 0 and stat.st_size > max_bytes:
                continue
            entries.append({
                "path": str(path),
                "filename": path.name,
                "size": stat.st_size,
                "created": _timestamp(stat.st_ctime),
                "modified": _timestamp(stat.st_mtime),
                "extension": suffix,
                "category": file_category(suffix),
            })
        return entries

    async def _scan(self, extension: Optional[str] = None) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._scan_sync, extension)

    async def _discover(self, filter: Dict[str, Any]) -> List[DataStructureInfo]:
        extension = normalize_extension(str(filter.get("extension", ""))) or None
        entries = await self._scan(extension)

        counts: Dict[str, int] = {}
        extensions: Dict[str, set] = {}
        for entry in entries:
            name = structure_name(entry["extension"])
            counts[name] = counts.get(name, 0) + 1
            extensions.setdefault(name, set()).add(entry["extension"])

        structures = []
        for name in sorted(counts):
            type_name = file_type(next(iter(extensions[name])))
            structures.append(DataStructureInfo(
                name=name,
                type="file",
                fields=list(FILE_FIELDS),
                description=f"{type_name} files",
                record_count=counts[name],
                metadata={"extensions": sorted(extensions[name])},
            ))
        logger.info(f"{self.id}: discovered {len(structures)} file structures under {self._root}")
        return structures

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def _resolve_targets(self, params: ExtractionParameters) -> Optional[List[str]]:
        """Requested structure names, or None for every file"""
        if params.wants_all_structures:
            return None
        known = {structure_name(ext) for ext in FILE_TYPES} | {"other_files"}
        targets = []
        for target in params.target_structures:
            name = target.lower()
            if name not in known:
                raise ExtractionError(f"Unknown file structure '{target}'", context={"target": target})
            targets.append(name)
        return targets

    @staticmethod
    def _apply_filters(entries: List[Dict[str, Any]], criteria: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not criteria:
            return entries
        path_filter = criteria.get("path")
        if path_filter:
            entries = [e for e in entries if str(path_filter).lower() in e["path"].lower()]
        name_filter = criteria.get("filename")
        if name_filter:
            entries = [e for e in entries if str(name_filter).lower() in e["filename"].lower()]
        after = _parse_datetime(criteria.get("modifiedAfter")) if criteria.get("modifiedAfter") else None
        if after is not None:
            entries = [e for e in entries if e["modified"] >= after]
        before = _parse_datetime(criteria.get("modifiedBefore")) if criteria.get("modifiedBefore") else None
        if before is not None:
            entries = [e for e in entries if e["modified"] <= before]
        min_size = _parse_int(criteria.get("minSize"))
        if min_size is not None:
            entries = [e for e in entries if e["size"] >= min_size]
        max_size = _parse_int(criteria.get("maxSize"))
        if max_size is not None:
            entries = [e for e in entries if e["size"] <= max_size]
        return entries

    async def _candidates(self, params: ExtractionParameters) -> List[Dict[str, Any]]:
        extension = None
        if params.filter_criteria.get("extension"):
            extension = normalize_extension(str(params.filter_criteria["extension"]))
        entries = await self._scan(extension)

        targets = self._resolve_targets(params)
        if targets is not None:
            entries = [e for e in entries if structure_name(e["extension"]) in targets]
        return self._apply_filters(entries, params.filter_criteria)

    async def _extract(self, params: ExtractionParameters, context: OperationContext) -> ExtractionResult:
        entries = await self._candidates(params)
        limit = params.max_records or params.batch_size
        token_target = self._token_target(params)

        if params.incremental:
            return await self._extract_incremental(entries, token_target, params, limit, context)

        offset = 0
        if token_matches(params.continuation_token, token_target):
            offset = OffsetToken.decode(params.continuation_token).offset

        page = entries[offset:offset + limit]
        rows = [await self._build_row(entry, params, context, len(entries)) for entry in page]
        has_more = offset + len(rows) < len(entries)
        token = OffsetToken(token_target, offset + len(rows)).encode() if has_more else None
        return ExtractionResult.ok(
            rows,
            structure_info=self._structure_for(token_target, len(entries)),
            has_more_records=has_more,
            continuation_token=token,
        )

    async def _extract_incremental(
        self,
        entries: List[Dict[str, Any]],
        target: str,
        params: ExtractionParameters,
        limit: int,
        context: OperationContext
    ) -> ExtractionResult:
        if params.tracking_field and params.tracking_field.lower() != TRACKING_FIELD:
            raise IncrementalSyncError(
                f"File repositories only track '{TRACKING_FIELD}', not '{params.tracking_field}'",
                context={"target": target, "tracking_field": params.tracking_field}
            )
        state = TrackingState.from_token(params.continuation_token, target, TRACKING_FIELD, params.changes_from)
        changed = [e for e in entries if state.is_new(e[TRACKING_FIELD])]
        changed.sort(key=lambda e: (e[TRACKING_FIELD], e["path"]))

        page = changed[:limit]
        if page and len(changed) > limit:
            # files sharing the last modification time go out together
            last = Value.of(page[-1][TRACKING_FIELD])
            while len(page) < len(changed) and last.equals(Value.of(changed[len(page)][TRACKING_FIELD])):
                page.append(changed[len(page)])

        rows = []
        for entry in page:
            state.observe(entry)
            rows.append(await self._build_row(entry, params, context, len(changed)))

        logger.info(f"{self.id}: {len(rows)} files modified after {state.last_value!r} in {target}")
        return ExtractionResult.ok(
            rows,
            structure_info=self._structure_for(target, len(changed)),
            has_more_records=len(changed) > len(rows),
            continuation_token=state.token() or params.continuation_token,
        )

    @staticmethod
    def _token_target(params: ExtractionParameters) -> str:
        if params.wants_all_structures:
            return "all_files"
        return ",".join(sorted(t.lower() for t in params.target_structures))

    @staticmethod
    def _structure_for(target: str, count: int) -> DataStructureInfo:
        return DataStructureInfo(
            name=target,
            type="file",
            fields=list(FILE_FIELDS),
            description="Files extracted from the repository",
            record_count=count,
        )

    async def _build_row(
        self,
        entry: Dict[str, Any],
        params: ExtractionParameters,
        context: OperationContext,
        total: int
    ) -> Dict[str, Any]:
        context.check_cancelled()
        row = dict(entry)
        if params.options.get("includeContent") in (True, "true", "True", "1"):
            try:
                row.update(await asyncio.to_thread(self._read_content, entry))
            except (OSError, UnicodeDecodeError, pd.errors.ParserError) as e:
                logger.warning(f"{self.id}: could not read {entry['filename']}: {e}")
                row["content"] = f"Error extracting content: {e}"
        context.advance(1, total, f"Processed {context.rows_seen + 1} of {total} files")

        fields = params.include_fields or list(row)
        return {field: to_transport(row[field]) for field in fields if field in row}

    @staticmethod
    def _read_content(entry: Dict[str, Any]) -> Dict[str, Any]:
        extension = entry["extension"]
        path = Path(entry["path"])
        if extension not in TEXT_EXTENSIONS:
            modified = entry["modified"].isoformat()
            return {
                "content": f"[{extension.lstrip('.')} file: {entry['filename']}, "
                           f"Size: {entry['size']} bytes, Last Modified: {modified}]"
            }

        extra: Dict[str, Any] = {"content": path.read_text(encoding="utf-8")}
        if extension == ".csv":
            try:
                df = pd.read_csv(path)
            except pd.errors.EmptyDataError:
                df = pd.DataFrame()
            extra["row_count"] = int(len(df))
            extra["columns"] = [str(c) for c in df.columns]
        return extra
