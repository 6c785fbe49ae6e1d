from setuptools import setup, find_packages

setup(
    name="xvlsv",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "xarray>=2023.1.0",
        "numpy>=1.20",
        "dask[array]>=2021.1",
        "pandas>=1.5.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        'xarray.backends': [
            'vlsv = xvlsv.backend:VlsvEntrypoint',
        ],
    },
    author="xvlsv contributors",
    description="Vlasiator VLSV reader with AMR spatial indexing and an xarray backend.",
    long_description="Reads Vlasiator VLSV output: footer parsing, typed block reads, DCCRG cell id indexing, fsgrid reconstruction, slices, line samples, derived quantities and velocity space, with an xarray backend using lazy dask loading.",
    url="https://github.com/your-repo/xvlsv",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering",
        "Topic :: Scientific/Engineering :: Physics",
    ],
    python_requires=">=3.8",
    include_package_data=True,
)
