"""
JSON schemas for stored clinical documents.

The schema is the persistence contract for ``ClinicalRecord.payload``: every
document the versioning engine writes, whether it came from the typed
``ClinicalPayload`` or a raw mapping, is checked against it first.
"""

CLINICAL_RECORD_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Clinical record payload",
    "type": "object",
    "required": ["visit_type", "chief_complaint", "diagnosis", "hospital"],
    "properties": {
        "visit_type": {
            "type": "string",
            "enum": [
                "consultation",
                "emergency",
                "surgery",
                "follow_up",
                "diagnostic",
                "vaccination",
                "checkup",
            ],
        },
        "visit_date": {"type": "string"},
        "chief_complaint": {"type": "string", "minLength": 1, "maxLength": 500},
        "history_of_present_illness": {"type": "string", "maxLength": 2000},
        "hospital": {
            "type": "object",
            "required": ["name", "registration_number"],
            "properties": {
                "name": {"type": "string", "minLength": 1},
                "registration_number": {"type": "string", "minLength": 1},
                "address": {"type": "object"},
            },
        },
        "vital_signs": {"type": "object"},
        "diagnosis": {
            "type": "object",
            "required": ["primary"],
            "properties": {
                "primary": {"type": "string", "minLength": 1},
                "secondary": {"type": "array", "items": {"type": "string"}},
                "icd_codes": {"type": "array"},
            },
        },
        "treatment": {"type": "object"},
        "lab_results": {"type": "array"},
        "allergies": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["allergen", "reaction", "severity"],
                "properties": {
                    "allergen": {"type": "string"},
                    "reaction": {"type": "string"},
                    "severity": {
                        "type": "string",
                        "enum": ["mild", "moderate", "severe", "life_threatening"],
                    },
                },
            },
        },
        "emergency_info": {
            "type": "object",
            "properties": {
                "blood_group": {
                    "type": "string",
                    "enum": ["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"],
                },
                "chronic_conditions": {"type": "array"},
                "current_medications": {"type": "array"},
                "medical_alerts": {"type": "array"},
            },
        },
        "attachments": {
            "type": "array",
            "description": "Attachment metadata only; file bytes are stored elsewhere.",
            "items": {"type": "object", "required": ["file_name"]},
        },
        "tags": {"type": "array", "items": {"type": "string"}},
        "notes": {"type": "string"},
    },
    "additionalProperties": False,
}
