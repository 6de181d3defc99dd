"""File system tools scoped to a temporary agent workspace.

Every tool takes paths relative to the workspace and refuses paths that
resolve outside of it. Failures are reported back to the model as
``Error ...`` strings instead of raising.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from langchain_core.tools import BaseTool, StructuredTool
from pydantic import BaseModel, Field
from rank_bm25 import BM25Okapi

from app.core.config import settings

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {
    ".txt", ".md", ".js", ".ts", ".py", ".java", ".cpp", ".c", ".h", ".css",
    ".html", ".xml", ".json", ".yaml", ".yml", ".sql", ".sh", ".bat",
}
SKIPPED_DIRECTORIES = {"node_modules", ".git", ".vscode", "dist", "build"}
SEARCH_CHUNK_SIZE = 1000
SEARCH_CHUNK_OVERLAP = 200


def create_temp_agent_directory(root: Optional[str] = None) -> str:
    """Create a fresh ``agent_<suffix>`` directory under the temp root.

    Args:
        root: Parent directory, defaults to ``settings.agents_temp_dir``.

    Returns:
        Absolute path of the created directory.
    """
    temp_dir = Path(root or settings.agents_temp_dir).resolve()
    temp_dir.mkdir(parents=True, exist_ok=True)
    agent_dir = temp_dir / f"agent_{uuid.uuid4().hex[:13]}"
    agent_dir.mkdir(parents=True)
    logger.info(f"Created agent workspace {agent_dir}")
    return str(agent_dir)


def delete_temp_agent_directory(path: str) -> None:
    """Remove an agent workspace and everything in it, if it still exists."""
    if Path(path).exists():
        shutil.rmtree(path)
        logger.info(f"Deleted agent workspace {path}")


def resolve_workspace_path(workspace: str, relative_path: str) -> Path:
    """Resolve ``relative_path`` inside ``workspace``.

    Raises:
        ValueError: if the path points outside the workspace.
    """
    root = Path(workspace).resolve()
    target = (root / relative_path).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"Path {relative_path!r} is outside the agent workspace")
    return target


def clean_written_content(content: str) -> str:
    """Undo the quoting and escaping models tend to add to file content."""
    cleaned = content.strip()
    if cleaned.startswith('"'):
        cleaned = cleaned[1:]
    if cleaned.endswith('"'):
        cleaned = cleaned[:-1]

    cleaned = cleaned.replace("\\n", "\n")
    for escaped, plain in (("\\'", "'"), ('\\"', '"'), ("\\`", "`"), ("\\$", "$"), ("\\\\", "\\")):
        cleaned = cleaned.replace(escaped, plain)
    return cleaned


class FilePathInput(BaseModel):
    file_path: str = Field(description="The path to the file, relative to the temporary agent directory.")


class WriteFileInput(BaseModel):
    file_path: str = Field(description="The path to the file to write, relative to the temporary agent directory.")
    content: str = Field(description="The content to write to the file.")


class DirectoryPathInput(BaseModel):
    dir_path: str = Field(description="The path to the directory, relative to the temporary agent directory.")


class PathExistsInput(BaseModel):
    path_to_check: str = Field(description="The path to check, relative to the temporary agent directory.")


class SearchFilesInput(BaseModel):
    dir_path: str = Field(description="The directory to search, relative to the temporary agent directory.")
    query: str = Field(description="The search query.")
    top_k: int = Field(default=5, ge=1, description="The number of top results to return.")


def _tokenize(text: str) -> List[str]:
    return re.findall(r"\w+", text.lower())


def _split_text(text: str) -> List[str]:
    step = SEARCH_CHUNK_SIZE - SEARCH_CHUNK_OVERLAP
    return [text[i:i + SEARCH_CHUNK_SIZE] for i in range(0, len(text), step)]


def _processable_files(directory: Path) -> List[Path]:
    files: List[Path] = []
    for path in sorted(directory.iterdir()):
        if path.is_dir():
            if path.name not in SKIPPED_DIRECTORIES:
                files.extend(_processable_files(path))
        elif path.suffix.lower() in TEXT_EXTENSIONS:
            files.append(path)
    return files


def read_file_tool(workspace: str) -> BaseTool:
    def read_file(file_path: str) -> str:
        try:
            return resolve_workspace_path(workspace, file_path).read_text(encoding="utf-8")
        except (OSError, ValueError) as e:
            return f"Error reading file: {e}"

    return StructuredTool.from_function(
        func=read_file,
        name="read_file",
        description="Reads the contents of a file.",
        args_schema=FilePathInput,
    )


def write_file_tool(workspace: str) -> BaseTool:
    def write_file(file_path: str, content: str) -> str:
        try:
            target = resolve_workspace_path(workspace, file_path)
            target.write_text(clean_written_content(content), encoding="utf-8")
            return f"Successfully wrote to {file_path}"
        except (OSError, ValueError) as e:
            return f"Error writing file: {e}"

    return StructuredTool.from_function(
        func=write_file,
        name="write_file",
        description="Writes content to a file.",
        args_schema=WriteFileInput,
    )


def delete_file_tool(workspace: str) -> BaseTool:
    def delete_file(file_path: str) -> str:
        try:
            resolve_workspace_path(workspace, file_path).unlink()
            return f"Successfully deleted {file_path}"
        except (OSError, ValueError) as e:
            return f"Error deleting file: {e}"

    return StructuredTool.from_function(
        func=delete_file,
        name="delete_file",
        description="Deletes a file.",
        args_schema=FilePathInput,
    )


def list_directory_tool(workspace: str) -> BaseTool:
    def list_directory(dir_path: str) -> str:
        try:
            directory = resolve_workspace_path(workspace, dir_path)
            items = [f"{item.name}/" if item.is_dir() else item.name for item in sorted(directory.iterdir())]
            return json.dumps(items)
        except (OSError, ValueError) as e:
            return f"Error listing directory: {e}"

    return StructuredTool.from_function(
        func=list_directory,
        name="list_directory",
        description="Lists the contents of a directory. Directories are suffixed with '/'.",
        args_schema=DirectoryPathInput,
    )


def create_directory_tool(workspace: str) -> BaseTool:
    def create_directory(dir_path: str) -> str:
        try:
            resolve_workspace_path(workspace, dir_path).mkdir(parents=True, exist_ok=True)
            return f"Successfully created directory {dir_path}"
        except (OSError, ValueError) as e:
            return f"Error creating directory: {e}"

    return StructuredTool.from_function(
        func=create_directory,
        name="create_directory",
        description="Creates a new directory.",
        args_schema=DirectoryPathInput,
    )


def remove_directory_tool(workspace: str) -> BaseTool:
    def remove_directory(dir_path: str) -> str:
        try:
            target = resolve_workspace_path(workspace, dir_path)
            if target == Path(workspace).resolve():
                raise ValueError("Refusing to remove the agent workspace itself")
            shutil.rmtree(target)
            return f"Successfully removed directory {dir_path}"
        except (OSError, ValueError) as e:
            return f"Error removing directory: {e}"

    return StructuredTool.from_function(
        func=remove_directory,
        name="remove_directory",
        description="Removes a directory and its contents.",
        args_schema=DirectoryPathInput,
    )


def path_exists_tool(workspace: str) -> BaseTool:
    def path_exists(path_to_check: str) -> str:
        try:
            exists = resolve_workspace_path(workspace, path_to_check).exists()
        except ValueError as e:
            return f"Error checking path: {e}"
        return json.dumps({"exists": exists})

    return StructuredTool.from_function(
        func=path_exists,
        name="path_exists",
        description="Checks if a path exists.",
        args_schema=PathExistsInput,
    )


def search_files_tool(workspace: str) -> BaseTool:
    def search_files(dir_path: str, query: str, top_k: int = 5) -> str:
        """Rank chunks of the text files under ``dir_path`` against ``query`` with BM25."""
        try:
            directory = resolve_workspace_path(workspace, dir_path)
            files = _processable_files(directory)
        except (OSError, ValueError) as e:
            return json.dumps({"success": False, "results": [], "message": f"Error searching files: {e}"})

        passages: List[Dict] = []
        for path in files:
            try:
                chunks = _split_text(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping file {path}: {e}")
                continue
            for index, chunk in enumerate(chunks):
                if not _tokenize(chunk):
                    continue
                passages.append({
                    "filePath": str(path.relative_to(Path(workspace).resolve())),
                    "chunkIndex": index,
                    "totalChunks": len(chunks),
                    "tokens": _tokenize(chunk),
                })

        query_tokens = _tokenize(query)
        if not passages or not query_tokens:
            return json.dumps({"success": True, "results": [], "message": "No content could be searched"})

        bm25 = BM25Okapi([passage["tokens"] for passage in passages])
        scores = bm25.get_scores(query_tokens)
        top_indices = sorted(range(len(scores)), key=lambda i: scores[i], reverse=True)[:top_k]

        results = []
        for i in top_indices:
            passage = {key: value for key, value in passages[i].items() if key != "tokens"}
            passage["score"] = float(scores[i])
            results.append(passage)
        return json.dumps({
            "success": True,
            "results": results,
            "message": f"Found {len(results)} relevant chunks across {len(files)} files",
        })

    return StructuredTool.from_function(
        func=search_files,
        name="search_files",
        description="Searches the text files in a directory for chunks relevant to a query.",
        args_schema=SearchFilesInput,
    )


def file_system_tools(workspace: str) -> List[BaseTool]:
    """Every file system tool bound to ``workspace``."""
    return [
        read_file_tool(workspace),
        write_file_tool(workspace),
        delete_file_tool(workspace),
        list_directory_tool(workspace),
        create_directory_tool(workspace),
        remove_directory_tool(workspace),
        path_exists_tool(workspace),
        search_files_tool(workspace),
    ]
