"""
File classification and processing order for repository scans
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List


class FileCategory(str, Enum):
    SBOM = "SBOM"
    CODE = "CODE"
    CONFIG = "CONFIG"
    OTHER = "OTHER"


class ScanType(str, Enum):
    COMPLETE = "complete"
    SBOM = "sbom"
    VULNERABILITY = "vulnerability"


# Dependency manifests / lockfiles, matched by trailing filename
SBOM_FILES = frozenset({
    'package.json', 'package-lock.json', 'yarn.lock',
    'requirements.txt', 'Pipfile', 'Pipfile.lock', 'poetry.lock',
    'pom.xml', 'build.gradle', 'build.gradle.kts',
    'Cargo.toml', 'Cargo.lock',
    'go.mod', 'go.sum',
    'composer.json', 'composer.lock',
    'Gemfile', 'Gemfile.lock',
})

CODE_EXTENSIONS = frozenset({
    '.js', '.ts', '.jsx', '.tsx',
    '.py', '.pyx',
    '.java', '.scala', '.kt',
    '.php', '.rb',
    '.go', '.rs',
    '.c', '.cpp', '.cc', '.cxx',
    '.cs', '.vb',
    '.sql', '.pl',
})

CONFIG_EXTENSIONS = frozenset({
    '.yaml', '.yml', '.json', '.xml', '.toml', '.ini', '.conf', '.config',
})

# Categories each scan type keeps; complete keeps everything
SCAN_TYPE_CATEGORIES = {
    ScanType.SBOM: {FileCategory.SBOM},
    ScanType.VULNERABILITY: {FileCategory.CODE},
}


@dataclass(frozen=True)
class RepoFile:
    """A file selected for analysis"""
    path: str
    classification: FileCategory
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "classification": self.classification.value, "size": self.size}


def _extension(file_name: str) -> str:
    if '.' not in file_name:
        return ''
    return '.' + file_name.rsplit('.', 1)[1]


def classify_file(file_path: str) -> FileCategory:
    """Map a path to its category from the trailing filename and extension"""
    file_name = file_path.rsplit('/', 1)[-1]

    if file_name in SBOM_FILES:
        return FileCategory.SBOM

    extension = _extension(file_name)
    if extension in CODE_EXTENSIONS:
        return FileCategory.CODE
    if extension in CONFIG_EXTENSIONS:
        return FileCategory.CONFIG

    return FileCategory.OTHER


def collect_files(structure: Dict[str, Any], scan_type: str) -> List[RepoFile]:
    """
    Walk the retrieval service's nested tree and keep the files relevant
    to the scan type.

    Nodes look like ``{"type": "file", "size": 120}`` or
    ``{"type": "directory", "children": {...}}``.
    """
    scan_type = ScanType(scan_type)
    allowed = SCAN_TYPE_CATEGORIES.get(scan_type)
    files: List[RepoFile] = []

    def traverse(nodes: Dict[str, Any], current_path: str = '') -> None:
        for name, node in nodes.items():
            file_path = f"{current_path}/{name}" if current_path else name
            node_type = node.get('type') if isinstance(node, dict) else None

            if node_type == 'file':
                classification = classify_file(file_path)
                if allowed is None or classification in allowed:
                    files.append(RepoFile(file_path, classification, int(node.get('size') or 0)))
            elif node_type == 'directory':
                traverse(node.get('children') or {}, file_path)

    traverse(structure or {})
    return files


def prioritize_files(files: Iterable[RepoFile]) -> List[RepoFile]:
    """Dependency manifests first, then everything else smallest first"""
    return sorted(
        files,
        key=lambda f: (f.classification != FileCategory.SBOM, f.size)
    )
