"""Tests for message personalisation."""

from comms_scheduler.models.parent import Parent
from comms_scheduler.services.templating import build_variables, render_template


def test_known_and_unknown_placeholders():
    variables = build_variables(Parent(name="Ada", email="ada@example.com"), "Rise as One")

    rendered = render_template("Hi {parentName}, {missingVar}see you at {programName}.", variables)

    assert rendered == "Hi Ada, see you at Rise as One."


def test_missing_parent_fields_render_empty():
    variables = build_variables(Parent(name="Grace"), "Program")

    assert render_template("Call {parentPhone} or write {parentEmail}", variables) == "Call  or write "


def test_non_identifier_braces_are_left_alone():
    variables = build_variables(Parent(name="Ada"), "Program")

    assert render_template("{ not a var } {parentName}", variables) == "{ not a var } Ada"


def test_empty_template():
    assert render_template(None, {}) == ""
    assert render_template("", {"parentName": "Ada"}) == ""


def test_program_name_defaults_to_settings():
    variables = build_variables(Parent(name="Ada"))

    assert variables["programName"] == "Rise as One Basketball Program"
