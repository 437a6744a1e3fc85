"""Comment grammar registry.

Every supported language is a row of data: the extensions it owns, its line
comment prefixes and its block comment pairs. Adding a language means adding a
row; nothing else branches on the language.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePath
from typing import Dict, FrozenSet, List, Optional, Tuple


@dataclass(frozen=True)
class CommentGrammar:
    name: str
    extensions: FrozenSet[str]
    line_prefixes: Tuple[str, ...] = ()
    block_pairs: Tuple[Tuple[str, str], ...] = ()


def _grammar(
    name: str,
    extensions: str,
    line_prefixes: Tuple[str, ...] = (),
    block_pairs: Tuple[Tuple[str, str], ...] = (),
) -> CommentGrammar:
    return CommentGrammar(
        name=name,
        extensions=frozenset(extensions.split()),
        line_prefixes=line_prefixes,
        block_pairs=block_pairs,
    )


C_BLOCK = ("/*", "*/")

GRAMMARS: Tuple[CommentGrammar, ...] = (
    _grammar(
        "c-family",
        "c h cc cpp cxx hpp hh hxx ino m mm cs java js mjs cjs jsx ts tsx mts cts "
        "go rs swift kt kts scala sc dart groovy gradle proto sol",
        ("//",),
        (C_BLOCK,),
    ),
    _grammar("zig", "zig", ("//",)),
    _grammar("php", "php phtml", ("//", "#"), (C_BLOCK,)),
    _grammar("css", "css", (), (C_BLOCK,)),
    _grammar("scss", "scss sass less styl", ("//",), (C_BLOCK,)),
    _grammar(
        "hash",
        "py pyw pyi rb rake gemspec sh bash zsh fish ksh pl pm r yaml yml toml tf tfvars "
        "hcl cmake conf cfg mk nim nims ex exs cr coffee graphql gql properties dockerfile",
        ("#",),
    ),
    _grammar("powershell", "ps1 psm1 psd1", ("#",), (("<#", "#>"),)),
    _grammar("julia", "jl", ("#",), (("#=", "=#"),)),
    _grammar("sql", "sql psql pgsql", ("--",), (C_BLOCK,)),
    _grammar("lua", "lua", ("--",), (("--[[", "]]"),)),
    _grammar("haskell", "hs elm purs", ("--",), (("{-", "-}"),)),
    _grammar("ada", "adb ads vhd vhdl", ("--",)),
    _grammar("lisp", "clj cljs cljc edn el lisp lsp scm ss rkt", (";",)),
    _grammar("ini", "ini", (";", "#")),
    _grammar("assembly", "asm nasm", (";",)),
    _grammar("erlang", "erl hrl", ("%",)),
    _grammar("tex", "tex sty cls", ("%",)),
    _grammar("markup", "html htm xhtml xml xsl xslt svg vue svelte md markdown", (), (("<!--", "-->"),)),
    _grammar("ocaml", "ml mli", (), (("(*", "*)"),)),
    _grammar("fsharp", "fs fsi fsx", ("//",), (("(*", "*)"),)),
    _grammar("pascal", "pas dpr lpr", ("//",), (("{", "}"), ("(*", "*)"))),
    _grammar("fortran", "f90 f95 f03 f08", ("!",)),
    _grammar("basic", "vb vbs bas", ("'",)),
    _grammar("batch", "bat cmd", ("::", "REM ", "rem ")),
    _grammar("vim", "vim", ('"',)),
    _grammar("handlebars", "hbs handlebars mustache", (), (("{{!--", "--}}"), ("{{!", "}}"))),
    _grammar("jinja", "j2 jinja jinja2 twig njk", (), (("{#", "#}"),)),
)

FILENAME_GRAMMARS: Dict[str, str] = {
    "dockerfile": "hash",
    "makefile": "hash",
    "gnumakefile": "hash",
    "cmakelists.txt": "hash",
    "rakefile": "hash",
    "gemfile": "hash",
    "vagrantfile": "hash",
    "jenkinsfile": "c-family",
}


def _index(grammars: Tuple[CommentGrammar, ...]) -> Dict[str, CommentGrammar]:
    index: Dict[str, CommentGrammar] = {}
    for grammar in grammars:
        for ext in grammar.extensions:
            if ext in index:
                raise ValueError(f"extension .{ext} claimed by {index[ext].name} and {grammar.name}")
            index[ext] = grammar
    return index


_BY_EXTENSION = _index(GRAMMARS)
_BY_NAME = {grammar.name: grammar for grammar in GRAMMARS}


def normalize_extension(extension: str) -> str:
    return extension.strip().lstrip(".").lower()


def grammar_for(extension: str) -> Optional[CommentGrammar]:
    return _BY_EXTENSION.get(normalize_extension(extension))


def grammar_for_path(path: str | PurePath) -> Optional[CommentGrammar]:
    pure = PurePath(path)
    by_name = FILENAME_GRAMMARS.get(pure.name.lower())
    if by_name:
        return _BY_NAME[by_name]
    if not pure.suffix:
        return None
    return grammar_for(pure.suffix)


def supported_extensions() -> List[str]:
    return sorted(_BY_EXTENSION)
