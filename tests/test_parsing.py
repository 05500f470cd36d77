import json

from assembly_guides.parsing import (
    ParseFailure,
    ParseOk,
    extract_json_object,
    normalize_page_extraction,
    parse_page_extraction,
)

from factories import page_json, step_json


class TestExtractJsonObject:
    def test_plain_object(self):
        result = extract_json_object('{"a": 1}')
        assert isinstance(result, ParseOk)
        assert result.value == {"a": 1}

    def test_strips_markdown_fence(self):
        text = 'Here you go:\n```json\n{"steps": []}\n```\nHope that helps'
        assert extract_json_object(text).value == {"steps": []}

    def test_takes_outermost_brace_span(self):
        text = 'Sure! {"outer": {"inner": 2}} trailing words'
        assert extract_json_object(text).value == {"outer": {"inner": 2}}

    def test_failures_are_values(self):
        for text in ("", "   ", "no json here", '{"truncated": ', "[1, 2, 3]"):
            result = extract_json_object(text)
            assert isinstance(result, ParseFailure), text
            assert not result.ok


class TestParsePageExtraction:
    def test_full_page(self):
        text = page_json(
            [step_json(3, confidence=0.82, parts=[("100001", "dowel", 4)])],
            arrow_count=2,
        )
        result = parse_page_extraction(text)
        assert result.ok
        page = result.value
        assert page.indicators.arrow_count == 2
        assert page.steps[0].step_number == 3
        assert page.steps[0].parts_shown[0].quantity == 4
        assert page.steps[0].confidence == 0.82

    def test_missing_steps_is_failure(self):
        result = parse_page_extraction('{"pageIndicators": {"arrowCount": 1}}')
        assert isinstance(result, ParseFailure)
        assert "steps" in result.reason

    def test_missing_indicators_default(self):
        result = parse_page_extraction('{"steps": []}')
        assert result.ok
        assert result.value.indicators.arrow_count == 0
        assert not result.value.indicators.has_hinge_or_rotation


class TestNormalize:
    def test_fills_defaults_and_clamps(self):
        page = normalize_page_extraction(
            {
                "steps": [
                    {"stepNumber": "2", "confidence": 1.7, "complexity": "weird"},
                    {"stepNumber": 3, "confidence": "n/a"},
                    "not a dict",
                ]
            }
        )
        first, second = page.steps
        assert first.step_number == 2
        assert first.confidence == 1.0
        assert first.complexity == "simple"
        assert first.description == ""
        assert first.parts_shown == ()
        assert first.spatial_details.orientation is None
        assert second.confidence == 0.0

    def test_fastener_rotation_normalized(self):
        page = normalize_page_extraction(
            {
                "steps": [
                    {
                        "stepNumber": 1,
                        "fasteners": [
                            {"type": "Screw", "rotation": "counter-clockwise"},
                            {"type": "dowel", "rotation": "sideways"},
                        ],
                    }
                ]
            }
        )
        screw, dowel = page.steps[0].fasteners
        assert screw.type == "screw"
        assert screw.rotation == "counter_clockwise"
        assert dowel.rotation == "none"

    def test_quantity_at_least_one(self):
        page = normalize_page_extraction(
            {"steps": [{"stepNumber": 1, "partsShown": [{"partNumber": "1", "quantity": 0}]}]}
        )
        assert page.steps[0].parts_shown[0].quantity == 1

    def test_accepts_snake_case(self):
        payload = json.loads(page_json([step_json(1)]))
        payload["page_indicators"] = {"arrow_count": 7}
        del payload["pageIndicators"]
        assert normalize_page_extraction(payload).indicators.arrow_count == 7

    def test_out_of_range_numbers_fall_back(self):
        text = (
            '{"steps": [{"stepNumber": 1e400, "partsShown": [{"partNumber": "1", "quantity": 1e400}]}],'
            ' "pageIndicators": {"arrowCount": -1e400}}'
        )
        result = parse_page_extraction(text)
        assert result.ok
        step = result.value.steps[0]
        assert step.step_number == 0
        assert step.parts_shown[0].quantity == 1
        assert result.value.indicators.arrow_count == 0

    def test_string_booleans(self):
        page = normalize_page_extraction(
            {
                "steps": [
                    {
                        "stepNumber": 1,
                        "arrows": [
                            {"direction": "down", "indicatesMotion": "false"},
                            {"direction": "up", "indicatesMotion": "Yes"},
                            {"direction": "left", "indicatesMotion": "maybe"},
                            {"direction": "right", "indicatesMotion": 0},
                            {"direction": "in"},
                        ],
                    }
                ],
                "pageIndicators": {
                    "hasHingeOrRotation": "false",
                    "hasFastenerAmbiguity": "true",
                    "isPartsPage": "0",
                },
            }
        )
        assert [a.indicates_motion for a in page.steps[0].arrows] == [
            False,
            True,
            True,
            False,
            True,
        ]
        assert page.indicators.has_hinge_or_rotation is False
        assert page.indicators.has_fastener_ambiguity is True
        assert page.indicators.is_parts_page is False
