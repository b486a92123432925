"""
Setup script for torch-cctc.

The package is pure PyTorch; there is no compiled extension. Install with:
    pip install -e .

With the test dependencies:
    pip install -e ".[test]"
"""

from pathlib import Path

from setuptools import find_packages, setup

HERE = Path(__file__).parent


def get_version():
    """Read __version__ without importing the package (torch may be missing)."""
    init_py = HERE / "src" / "torch_cctc" / "__init__.py"
    for line in init_py.read_text().splitlines():
        if line.startswith("__version__"):
            return line.split("=", 1)[1].strip().strip('"')
    raise RuntimeError(f"__version__ not found in {init_py}")


def main():
    setup(
        name="torch-cctc",
        version=get_version(),
        description="Context-dependent CTC (CCTC) training objective for PyTorch",
        python_requires=">=3.9",
        package_dir={"": "src"},
        packages=find_packages("src"),
        install_requires=["torch>=2.0"],
        extras_require={"test": ["pytest>=7"]},
    )


if __name__ == "__main__":
    main()
