from datetime import date, timedelta

from besspas import ledger, lifecycle, models, qr, verification
from besspas.security import Actor


def _scan_count(session, result=None):
    qs = session.query(models.ScanRecord)
    if result:
        qs = qs.filter(models.ScanRecord.scan_result == result)
    return qs.count()


def _payload(unit):
    return qr.build_payload(unit.serial_code, unit.auth_hash)


def test_end_to_end_batch_scenario(session, batch, mfg_actor):
    assert batch.batch_number == 'BATCH-20260112-0001'
    assert [u.serial_code for u in batch.units] == ['BATCH-20260112-0001-%04d' % i for i in (1, 2, 3)]
    for unit in batch.units:
        assert [e.previous_hash for e in unit.ledger_entries] == [ledger.GENESIS_HASH]

    batch_result = verification.verify_code(session, 'BATCH-20260112-0001')
    assert batch_result['is_batch'] is True
    assert batch_result['verified'] is True
    assert batch_result['product']['total_items'] == 3
    assert batch_result['product']['status_counts'][models.UNIT_MANUFACTURED] == 3
    assert batch_result['product']['sample_serial'] == 'BATCH-20260112-0001-0001'

    unit_result = verification.verify_code(session, 'BATCH-20260112-0001-0002')
    assert unit_result['verified'] is True
    assert unit_result['is_batch'] is False
    assert unit_result['status'] == 'authentic'
    assert len(unit_result['timeline']) == 1
    assert unit_result['timeline'][0]['action'] == models.ACTION_MANUFACTURED
    assert 'current_hash' not in unit_result['timeline'][0]
    assert unit_result['blockchain_history'][0]['previous_hash'] == ledger.GENESIS_HASH

    genesis = {u.id: ledger.get_chain_head(session, u.id).current_hash for u in batch.units}
    result = lifecycle.recall(session, mfg_actor, batch.id, 'Cell swelling')
    assert result['recalled_units'] == 3
    for unit in batch.units:
        entries = ledger.get_item_history(session, unit.id)
        assert [e.action for e in entries] == [models.ACTION_MANUFACTURED, models.ACTION_RECALLED]
        assert entries[1].previous_hash == genesis[unit.id]
        assert unit.status == models.UNIT_RECALLED

    recalled = verification.verify_code(session, 'BATCH-20260112-0001-0002')
    assert recalled['status'] == 'recalled'
    assert recalled['recall']['reason'] == 'Cell swelling'
    assert _scan_count(session) == 3


def test_every_verification_records_a_scan(session, batch):
    unit = batch.units[0]
    first = verification.verify_code(session, _payload(unit))
    second = verification.verify_code(session, _payload(unit))
    assert first['scan_result'] == second['scan_result'] == models.SCAN_VALID
    assert _scan_count(session, models.SCAN_VALID) == 2
    assert len(second['scan_history']) == 2
    scans = session.query(models.ScanRecord).all()
    assert all(s.item_id == unit.id for s in scans)


def test_unknown_code_is_fake(session, batch):
    result = verification.verify_code(session, 'BATCH-20260112-0001-0999')
    assert result['verified'] is False
    assert result['status'] == 'fake'
    assert result['scan_result'] == models.SCAN_FAKE
    assert _scan_count(session, models.SCAN_FAKE) == 1

    missing_batch = verification.verify_code(session, 'BATCH-20990101-0001')
    assert missing_batch['is_batch'] is True
    assert missing_batch['verified'] is False
    assert _scan_count(session, models.SCAN_FAKE) == 2


def test_empty_and_malformed_input(session, batch):
    assert verification.verify_code(session, '   ')['verified'] is False
    malformed = verification.verify_code(session, 'BATCH-20260112-0001-0001#')
    assert malformed['verified'] is False
    assert malformed['status'] == 'fake'
    assert _scan_count(session, models.SCAN_FAKE) == 2


def test_hash_mismatch_is_fake(session, batch):
    unit = batch.units[0]
    result = verification.verify_code(session, f'{unit.serial_code}#{"0" * 64}')
    assert result['verified'] is False
    assert result['status'] == 'fake'
    assert result['scan_result'] == models.SCAN_FAKE
    assert 'mismatch' in result['warning']
    # product details are still shown so the customer can report it
    assert result['product']['serial_code'] == unit.serial_code


def test_scanned_payload_is_normalized(session, batch):
    unit = batch.units[1]
    raw = f'  {unit.serial_code.lower()}#{unit.auth_hash.upper()} '
    assert verification.verify_code(session, raw)['verified'] is True


def test_sold_unit_scanned_by_someone_else_is_duplicate(session, batch, delivered_units, retail_actor, customer):
    lifecycle.sell_unit(session, retail_actor, delivered_units[0], customer_id=customer.id)
    owner = Actor.from_user(customer)

    ok = verification.verify_code(session, delivered_units[0], owner)
    assert ok['verified'] is True
    assert ok['current_holder']['name'] == 'Alice'

    copied = verification.verify_code(session, delivered_units[0])
    assert copied['verified'] is False
    assert copied['scan_result'] == models.SCAN_DUPLICATE
    assert copied['status'] == 'duplicate'
    # anonymous callers do not learn who bought it
    assert copied['current_holder'] == {'role': models.ROLE_CUSTOMER, 'name': None}
    assert _scan_count(session, models.SCAN_DUPLICATE) == 1


def test_sold_unit_without_known_buyer(session, batch, delivered_units, retail_actor, customer, monkeypatch):
    lifecycle.sell_unit(session, retail_actor, delivered_units[0])
    first = verification.verify_code(session, delivered_units[0], Actor.from_user(customer))
    assert first['verified'] is True

    # another context inside the grace window is still accepted
    assert verification.verify_code(session, delivered_units[0])['verified'] is True

    real_utcnow = models.utcnow
    monkeypatch.setattr(models, 'utcnow', lambda: real_utcnow() + timedelta(minutes=30))
    late = verification.verify_code(session, delivered_units[0])
    assert late['scan_result'] == models.SCAN_DUPLICATE
    # the first buyer keeps verifying fine
    assert verification.verify_code(session, delivered_units[0], Actor.from_user(customer))['scan_result'] == models.SCAN_VALID


def test_scan_burst_is_duplicate(session, batch):
    unit = batch.units[0]
    for _ in range(6):
        assert verification.verify_code(session, unit.serial_code)['scan_result'] == models.SCAN_VALID
    burst = verification.verify_code(session, unit.serial_code)
    assert burst['scan_result'] == models.SCAN_DUPLICATE
    assert 'Multiple scans' in burst['warning']


def test_expired_batch(session, mfg_actor, product):
    old = lifecycle.create_batch(session, mfg_actor, product.id, 1, date(2020, 1, 1), date(2021, 1, 1))
    result = verification.verify_code(session, old.units[0].serial_code)
    assert result['verified'] is True
    assert result['status'] == 'expired'
    assert result['product']['is_expired'] is True
    assert verification.verify_code(session, old.batch_number)['product']['is_expired'] is True


def test_retailer_is_disclosed(session, batch, delivered_units):
    result = verification.verify_code(session, delivered_units[0])
    assert result['current_retailer'] == {'name': 'Corner Electronics', 'location': 'Mumbai'}
    assert result['manufacturer']['name'] == 'Acme Batteries'
    assert result['product']['current_status'] == models.UNIT_IN_INVENTORY
