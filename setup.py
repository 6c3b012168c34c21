from setuptools import setup, find_packages

setup(
    name="knowledge_engine",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.22",
        "tqdm>=4.60",
    ],
    extras_require={
        # Cloud embeddings (install separately when needed)
        "openai": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "knowledge-engine=knowledge_engine.cli:main",
        ],
    },
    author="Uday Kanth",
    description="A local knowledge base that chunks, embeds and searches text.",
)
