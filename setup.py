"""
autoaccept - Auto-accept agent prompts in CDP-debuggable IDEs
"""
from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="autoaccept",
    version="0.1.0",
    author="Skyler Saleebyan",
    author_email="skylerbsaleebyan@gmail.com",
    description="Automatically accept agent prompts in IDEs via the Chrome DevTools Protocol",
    long_description=long_description,
    long_description_content_type="text/markdown",
    # Treat current directory as the autoaccept package
    packages=['autoaccept'],
    package_dir={'autoaccept': '.'},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Testing",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        "requests>=2.31.0",
        "deepdiff>=6.0.0",
        "websockets>=13.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "autoaccept=autoaccept.cli:main",
        ],
    },
)
