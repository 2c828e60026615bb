from setuptools import setup, find_packages
import os

# Read the contents of README file
this_directory = os.path.abspath(os.path.dirname(__file__))
try:
    with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
        long_description = f.read()
except FileNotFoundError:
    long_description = "ab-av1 - Encode video by CRF, searching for the best CRF to hit a VMAF/XPSNR target"

setup(
    name="ab-av1",
    version="0.9.0",
    description="Encode video by CRF, searching for the best CRF to hit a VMAF/XPSNR target",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["ab_av1", "ab_av1.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Multimedia :: Video :: Conversion",
    ],
    python_requires=">=3.8",
    install_requires=[
        "tqdm>=4.0.0",
        "psutil>=5.0.0",  # child process trees, cpu count for libvmaf threads
        "blake3>=0.3.0",  # sample-encode cache keys
    ],
    extras_require={
        "dev": [
            "pytest",
            "black",
            "flake8",
        ],
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "ab-av1=ab_av1.cli:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
