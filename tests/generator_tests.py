#!/usr/bin/env python3

from __future__ import annotations

import pathlib
import subprocess
import sys
import tempfile
import textwrap
import unittest

REPO_ROOT: pathlib.Path = pathlib.Path(__file__).resolve().parent.parent
GENERATOR_PATH: pathlib.Path = REPO_ROOT / "tools" / "enum_conv_gen.py"


class GeneratorBehaviorTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        if not GENERATOR_PATH.exists():
            raise RuntimeError(f"generator not found: {GENERATOR_PATH}")
        cls.generator = GENERATOR_PATH
        cls.repo_root = REPO_ROOT

    def run_gen(self, in_path: pathlib.Path, out_path: pathlib.Path, check: bool = False) -> subprocess.CompletedProcess[str]:
        cmd = [
            sys.executable,
            str(self.generator),
            "--in",
            str(in_path),
            "--out",
            str(out_path),
        ]
        if check:
            cmd.append("--check")
        return subprocess.run(cmd, cwd=self.repo_root, text=True, capture_output=True)

    def generate(self, name: str, source: str) -> tuple[subprocess.CompletedProcess[str], str]:
        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / f"{name}.rs.in"
            out_path = tmp / f"{name}.rs"
            in_path.write_text(source, encoding="utf-8")
            result = self.run_gen(in_path, out_path)
            generated = out_path.read_text(encoding="utf-8") if out_path.exists() else ""
            return result, generated

    def test_targeted_substitution_and_passthrough(self) -> None:
        source = textwrap.dedent(
            """
            use std::fmt;
            // #[derive(EnumFrom)] in comment should remain untouched
            static TOKEN: &str = "#[derive(EnumFrom)] in string";

            #[derive(Debug)]
            struct Passthrough {
                k: i32,
            }

            #[derive(EnumFrom, Debug, PartialEq)]
            enum NumberOrString {
                Num(f32),
                Str(String),
            }
            """
        ).strip() + "\n"

        result, generated = self.generate("demo", source)
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertIn("generated:", result.stdout)

        self.assertTrue(generated.startswith("// enum-conv-generated\n"))
        self.assertRegex(generated, r"// digest: [0-9a-f]{64}\n")
        self.assertIn("struct Passthrough", generated)
        self.assertIn("// #[derive(EnumFrom)] in comment should remain untouched", generated)
        self.assertIn('"#[derive(EnumFrom)] in string"', generated)
        self.assertIn("#[derive(Debug, PartialEq)]\nenum NumberOrString {", generated)
        self.assertIn("impl ::core::convert::From<f32> for NumberOrString {", generated)
        self.assertIn("impl ::core::convert::From<String> for NumberOrString {", generated)
        self.assertIn("        Self::Num(item)", generated)
        self.assertIn("        Self::Str(item)", generated)
        self.assertEqual(generated.count("#[automatically_derived]"), 2)

    def test_check_mode_reports_drift(self) -> None:
        source = textwrap.dedent(
            """
            #[derive(EnumTryInto)]
            enum A {
                X(u8),
            }
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "a.rs.in"
            out_path = tmp / "a.rs"
            in_path.write_text(source, encoding="utf-8")

            missing = self.run_gen(in_path, out_path, check=True)
            self.assertNotEqual(missing.returncode, 0)
            self.assertIn("is missing", missing.stderr)

            first = self.run_gen(in_path, out_path)
            self.assertEqual(first.returncode, 0, msg=first.stderr)

            again = self.run_gen(in_path, out_path)
            self.assertEqual(again.returncode, 0, msg=again.stderr)
            self.assertIn("unchanged", again.stdout)

            check_ok = self.run_gen(in_path, out_path, check=True)
            self.assertEqual(check_ok.returncode, 0, msg=check_ok.stderr)
            self.assertIn("up-to-date", check_ok.stdout)

            in_path.write_text(source + "// changed\n", encoding="utf-8")
            check_bad = self.run_gen(in_path, out_path, check=True)
            self.assertNotEqual(check_bad.returncode, 0)
            self.assertIn("out of date", check_bad.stderr)

    def test_missing_input_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            result = self.run_gen(tmp / "nope.rs.in", tmp / "nope.rs")
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("input file does not exist", result.stderr)
            self.assertFalse((tmp / "nope.rs").exists())

    def test_struct_rejected_with_location(self) -> None:
        source = textwrap.dedent(
            """
            #[derive(EnumFrom)]
            struct Bad(u8);
            """
        ).strip() + "\n"

        with tempfile.TemporaryDirectory() as td:
            tmp = pathlib.Path(td)
            in_path = tmp / "bad.rs.in"
            out_path = tmp / "bad.rs"
            in_path.write_text(source, encoding="utf-8")

            result = self.run_gen(in_path, out_path)
            self.assertNotEqual(result.returncode, 0)
            self.assertIn("Can only derive EnumFrom on enums", result.stderr)
            self.assertRegex(result.stderr, r"bad\.rs\.in:2:1: error:")
            self.assertFalse(out_path.exists())

    def test_unknown_reference_mode_rejected_with_location(self) -> None:
        source = textwrap.dedent(
            """
            #[derive(EnumTryInto)]
            #[try_into_references(&, shared)]
            enum Bad {
                A(u8),
            }
            """
        ).strip() + "\n"

        result, generated = self.generate("bad", source)
        self.assertNotEqual(result.returncode, 0)
        self.assertIn("bad.rs.in:2:26: error: expected 'ref', '&' or 'owned'", result.stderr)
        self.assertEqual(generated, "")

    def test_reference_modes_codegen(self) -> None:
        source = textwrap.dedent(
            """
            #[derive(EnumTryInto, Debug, PartialEq)]
            #[try_into_references(&, ref mut, owned)]
            #[allow(dead_code)]
            enum NumberOrString {
                Num(f32),
                #[try_into_ignore]
                Str(String),
            }
            """
        ).strip() + "\n"

        result, generated = self.generate("refs", source)
        self.assertEqual(result.returncode, 0, msg=result.stderr)

        self.assertNotIn("try_into_references", generated)
        self.assertNotIn("try_into_ignore", generated)
        self.assertIn("#[allow(dead_code)]", generated)
        self.assertIn("impl ::core::convert::TryInto<f32> for NumberOrString {", generated)
        self.assertIn(
            "impl<'try_into_ref> ::core::convert::TryInto<&'try_into_ref f32> for &'try_into_ref NumberOrString {",
            generated,
        )
        self.assertIn(
            "impl<'try_into_ref> ::core::convert::TryInto<&'try_into_ref mut f32> for &'try_into_ref mut NumberOrString {",
            generated,
        )
        self.assertNotIn("TryInto<String>", generated)
        self.assertEqual(generated.count("type Error = Self;"), 3)
        self.assertEqual(generated.count("if let NumberOrString::Num(item) = self {"), 3)
        self.assertIn("::core::result::Result::Err(self)", generated)

    def test_duplicate_payload_types_skipped(self) -> None:
        source = textwrap.dedent(
            """
            #[derive(EnumFrom, EnumTryInto)]
            enum X {
                A(i32),
                B(String),
                C(String),
            }
            """
        ).strip() + "\n"

        result, generated = self.generate("dup", source)
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertNotIn("#[derive(", generated)
        self.assertIn("impl ::core::convert::From<i32> for X {", generated)
        self.assertIn("impl ::core::convert::TryInto<i32> for X {", generated)
        self.assertNotIn("From<String>", generated)
        self.assertNotIn("TryInto<String>", generated)

    def test_nested_enum_keeps_indentation(self) -> None:
        source = textwrap.dedent(
            """
            mod shapes {
                #[derive(EnumFrom)]
                pub enum Shape<T> where T: Copy {
                    Circle(T),
                    Square(u32),
                }
            }
            """
        ).strip() + "\n"

        result, generated = self.generate("nested", source)
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertIn("mod shapes {\n    pub enum Shape<T> where T: Copy {", generated)
        self.assertIn(
            "\n    #[automatically_derived]\n    impl<T> ::core::convert::From<T> for Shape<T> where T: Copy {\n",
            generated,
        )
        self.assertIn("\n        fn from(item: u32) -> Self {\n", generated)
        self.assertTrue(generated.endswith("    }\n}\n"))


if __name__ == "__main__":
    if len(sys.argv) == 3:
        GENERATOR_PATH = pathlib.Path(sys.argv[1]).resolve()
        REPO_ROOT = pathlib.Path(sys.argv[2]).resolve()
        sys.argv = [sys.argv[0]]
    unittest.main()
