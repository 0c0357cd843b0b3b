"""Workspace configuration: opinions.yaml loading and compilation.

- Loader: YAML over built-in defaults, validated and fingerprinted
- Compiler: branch patterns, protection sets, lifecycle matrix, prompts
"""
