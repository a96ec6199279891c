"""
Setup configuration for Task Board Agent package
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="taskboard-agent",
    version="1.0.0",
    description="A LangGraph-based staged tool-calling agent for a personal task board",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    py_modules=["start_api"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Libraries",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.11",
    install_requires=[
        "langgraph>=0.2.0",
        "langchain-core>=0.3.0",
        "langchain-anthropic>=0.2.0",
        "python-dotenv>=1.0.0",
        "jsonschema>=4.18",
        "fastapi>=0.110",
        "pydantic>=2.0",
        "uvicorn>=0.27",
        "httpx>=0.27",
        "websockets>=13.0",
        "numpy>=1.24",
    ],
    extras_require={
        "openai": [
            "langchain-openai>=0.2.0",
        ],
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "taskboard-agent-api=start_api:main",
        ],
    },
)
