"""
JSON Schemas for the parts of the configuration file that describe what keel
manages: resource declarations, fleets, alarms and scaling policies.
"""

MAX_COOLDOWN = 86400   # 24 * 60 * 60

_identifier = {
    "type": "string",
    "minLength": 1,
    "maxLength": 255,
    "pattern": "^\\S+$",  # must contain non-whitespace
    "required": True
}

resource = {
    "type": "object",
    "description": "The declaration of one resource.",
    "properties": {
        "id": _identifier,
        "kind": {
            "type": "string",
            "minLength": 1,
            "required": True,
            "description": "Resource kind, as understood by the provider."
        },
        "attributes": {
            "type": "object",
            "description": ("Desired attributes. Any object anywhere in "
                            "them that looks like a reference is one.")
        },
        "depends_on": {
            "type": "array",
            "items": {"type": "string"},
            "uniqueItems": True
        }
    },
    "additionalProperties": False
}

fleet = {
    "type": "object",
    "properties": {
        "id": _identifier,
        "metric": {
            "type": "string",
            "minLength": 1,
            "required": True,
            "description": "Name of the load metric to stream."
        },
        "min_size": {
            "type": "integer",
            "minimum": 0,
            "required": True
        },
        "max_size": {
            "type": "integer",
            "minimum": 0,
            "required": True
        },
        "desired": {
            "type": "integer",
            "minimum": 0,
            "description": "Initial desired capacity; defaults to min_size."
        }
    },
    "additionalProperties": False
}

alarm = {
    "type": "object",
    "properties": {
        "name": _identifier,
        "threshold": {
            "type": "number",
            "required": True
        },
        "comparison": {
            "type": "string",
            "enum": [">=", "<="],
            "required": True
        },
        "periods": {
            "type": "integer",
            "minimum": 1,
            "description": ("Consecutive periods needed to go into, or come "
                            "out of, ALARM.")
        },
        "statistic": {
            "type": "string",
            "enum": ["average", "maximum", "minimum", "sum", "sample_count"]
        }
    },
    "additionalProperties": False
}

policy = {
    "type": "object",
    "properties": {
        "id": _identifier,
        "fleet": _identifier,
        "alarm": _identifier,
        "adjustment": {
            "type": "number",
            "required": True
        },
        "adjustment_type": {
            "type": "string",
            "enum": ["change", "change_percent", "desired_capacity"]
        },
        "cooldown": {
            "type": "number",
            "minimum": 0,
            "maximum": MAX_COOLDOWN,
            "required": True
        }
    },
    "additionalProperties": False
}

config = {
    "type": "object",
    "description": "The keel configuration file.",
    "properties": {
        "scope": {"type": "string", "minLength": 1, "required": True},
        "holder": {"type": "string", "minLength": 1},
        "interval": {"type": "number", "minimum": 0},
        "lease_duration": {"type": "number", "minimum": 0},
        "provider": {"type": "string", "minLength": 1, "required": True},
        "provider_config": {"type": "object"},
        "convergence": {
            "type": "object",
            "properties": {
                "parallelism": {"type": "integer", "minimum": 1},
                "max_attempts": {"type": "integer", "minimum": 1},
                "backoff": {"type": "number", "minimum": 0},
                "max_conflicts": {"type": "integer", "minimum": 0},
                "call_timeout": {"type": "number", "minimum": 0}
            }
        },
        "zookeeper": {
            "type": "object",
            "properties": {
                "hosts": {"type": "string", "required": True},
                "threads": {"type": "integer", "minimum": 1},
                "no_logs": {"type": "boolean"}
            }
        },
        "resources": {
            "type": "array",
            "items": resource
        },
        "autoscale": {
            "type": "object",
            "properties": {
                "period": {"type": "number", "minimum": 0},
                "grace_period": {"type": "number", "minimum": 0},
                "restart_delay": {"type": "number", "minimum": 0},
                "fleets": {"type": "array", "items": fleet},
                "alarms": {"type": "array", "items": alarm},
                "policies": {"type": "array", "items": policy}
            }
        }
    }
}
