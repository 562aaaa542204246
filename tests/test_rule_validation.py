from followup.services.rule_validation import validate_action, validate_rule, validate_schedule


FIELDS = {"pk": "id", "contact": "email", "status": "replyStatus", "date": "lastEmailSent"}
CONDITION = {"equals": {"field": "status", "value": "NoReply"}}


def _codes(issues):
    return [issue["code"] for issue in issues]


def test_valid_rule_has_no_issues():
    action = {"channel": "email", "subject": "Checking in", "messageTemplate": "Hi {{ firstName }}"}
    assert validate_rule(condition=CONDITION, action=action, fields=FIELDS, schedule_cron="0 */3 * * *") == []


def test_action_issues():
    assert _codes(validate_action({})) == ["INVALID_ACTION"]
    assert _codes(validate_action({"channel": "fax"})) == ["INVALID_CHANNEL"]
    assert _codes(validate_action({"channel": "email"})) == ["MISSING_EMAIL_SUBJECT"]
    assert _codes(validate_action({"channel": "sms", "messageTemplate": "{{ broken"})) == ["INVALID_TEMPLATE"]
    assert _codes(validate_action({"channel": "dashboard", "content": 5})) == ["INVALID_TEMPLATE"]


def test_schedule_issues():
    assert validate_schedule(None) == []
    assert _codes(validate_schedule("0 9 * * MON")) == ["INVALID_CRON"]


def test_rule_collects_every_problem():
    issues = validate_rule(
        condition={"equals": {"field": "budget", "value": 1}},
        action={"channel": "email"},
        fields=FIELDS,
        schedule_cron="whenever",
    )
    assert _codes(issues) == ["UNRESOLVED_FIELD", "MISSING_EMAIL_SUBJECT", "INVALID_CRON"]
