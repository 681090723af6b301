"""
File classification, prioritization and chunking
"""

from .classifier import (
    FileCategory, ScanType, RepoFile, classify_file, collect_files, prioritize_files
)
from .chunker import Chunk, chunk_content, estimate_tokens

__all__ = [
    'FileCategory', 'ScanType', 'RepoFile', 'classify_file', 'collect_files',
    'prioritize_files', 'Chunk', 'chunk_content', 'estimate_tokens'
]
