from setuptools import setup, find_namespace_packages

setup(
    name="stackorch",
    version="0.1.0",
    packages=find_namespace_packages(where="src", include=["stackorch", "stackorch.*"]),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "psutil>=5.9",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "pydantic-settings>=2.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
        "dev": [
            "black>=23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "stackorch=stackorch.CLI.main:main",
        ],
    },
)
