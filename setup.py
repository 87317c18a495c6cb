from pathlib import Path

from setuptools import find_namespace_packages, setup

# Load packages from requirements.txt
BASE_DIR = Path(__file__).parent
with open(Path(BASE_DIR, "requirements.txt")) as file:
    required_packages = [
        ln.strip() for ln in file.readlines() if ln.strip() and not ln.startswith("#")
    ]

# Define our package
setup(
    name="StudyForge",
    version="0.1",
    description="Learning core: resumable document ingestion, semantic retrieval, graded quizzes and level progression",
    python_requires=">=3.10",
    packages=find_namespace_packages(include=["src", "src.*"]),
    install_requires=required_packages,
    extras_require={
        "local-embeddings": ["sentence-transformers>=2.7"],
        "dev": ["pytest>=7.4", "pytest-cov>=4.1", "pre-commit==2.19.0"],
    },
)
