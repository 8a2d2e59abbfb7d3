from access import InvitationAdmission, PinVerifier, check_pin, hash_pin


def test_pin_is_stored_as_bcrypt_hash():
    stored = hash_pin("123456")
    assert stored.startswith("$2")
    assert "123456" not in stored
    assert check_pin("123456", stored)
    assert not check_pin("654321", stored)


def test_each_hash_is_salted():
    assert hash_pin("123456") != hash_pin("123456")


def test_unusable_hashes_never_verify():
    assert not check_pin("123456", "")
    assert not check_pin("123456", "not-a-hash")
    assert not check_pin("", hash_pin("123456"))


def test_verifier_checks_the_users_pin(session, users):
    verifier = PinVerifier(session)
    assert verifier.verify(users["aulia"].id, "123456")
    assert not verifier.verify(users["aulia"].id, "000000")
    assert not verifier.verify(9999, "123456")


def test_admission_by_invitation_or_friendship(session, service, dinner, users):
    service.invite(dinner.id, users["andra"].id, [users["ivan"].id])
    assert InvitationAdmission(session).may_join(dinner, users["ivan"].id)
    outsider = users["ivan"].id + 100
    assert not InvitationAdmission(session).may_join(dinner, outsider)
    assert InvitationAdmission(session, are_friends=lambda host, user: True).may_join(dinner, outsider)
