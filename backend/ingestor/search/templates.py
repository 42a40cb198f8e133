"""
people_v1 index template.

Field layout consumed by the search API:
  name / fname   text + .keyword (exact, lower-cased) + .exact (token terms)
  address        text + .keyword + .parts (alphanumeric tokens)
  mobile / alt / id / email   lower-cased keywords (term + prefix lookups)
"""

from __future__ import annotations

PEOPLE_TEMPLATE_NAME = "people_v1"

_KEYWORD_LOWER = {"type": "keyword", "normalizer": "lowercase_normalizer"}

_NAME_FIELD = {
    "type": "text",
    "fields": {
        "keyword": {**_KEYWORD_LOWER, "ignore_above": 256},
        "exact":   {"type": "text", "analyzer": "token_exact"},
    },
}

PEOPLE_TEMPLATE: dict = {
    "index_patterns": ["people-*"],
    "priority": 100,
    "template": {
        "settings": {
            "analysis": {
                "normalizer": {
                    "lowercase_normalizer": {"type": "custom", "filter": ["lowercase"]},
                },
                "tokenizer": {
                    "alnum": {"type": "pattern", "pattern": "[^a-z0-9]+"},
                },
                "analyzer": {
                    "token_exact": {
                        "type": "custom",
                        "char_filter": [],
                        "tokenizer": "standard",
                        "filter": ["lowercase"],
                    },
                    "address_parts": {
                        "type": "custom",
                        "tokenizer": "alnum",
                        "filter": ["lowercase"],
                    },
                },
            },
        },
        "mappings": {
            "dynamic": "strict",
            "properties": {
                "id":          _KEYWORD_LOWER,
                "name":        _NAME_FIELD,
                "fname":       _NAME_FIELD,
                "mobile":      _KEYWORD_LOWER,
                "alt":         _KEYWORD_LOWER,
                "email":       _KEYWORD_LOWER,
                "address": {
                    "type": "text",
                    "fields": {
                        "keyword": {**_KEYWORD_LOWER, "ignore_above": 512},
                        "parts":   {"type": "text", "analyzer": "address_parts"},
                    },
                },
                "alt_address": {"type": "text"},
                "year_of_registration": {"type": "integer"},
                "region":      {"type": "keyword"},
            },
        },
    },
}
