import logging

import pytest

from pipeline_cache_sim import (
    BUBBLE,
    CACHE_MISS_DELAY,
    MAX_STAGES,
    ConfigError,
    InstructionKind,
    PipelineCacheSim,
    PipelineDumpError,
    Stage,
    StageSlot,
)


def make_sim(predict_taken=0, **kwargs):
    # 32 sets, 1-word blocks, direct mapped: 32 * 58 bits
    return PipelineCacheSim(5, 1, 1, predict_taken, **kwargs)


def rtype(addr):
    return StageSlot.rtype(addr, "add", 1, 2, 3)


# ── Stage vector ────────────────────────────────────────────────────────

def test_starts_empty():
    sim = make_sim()
    assert len(sim.stages) == MAX_STAGES
    assert all(slot.is_bubble for slot in sim.stages)
    assert sim.pipeline_cycles == 0
    assert sim.instruction_count == 0


def test_advance_on_empty_pipeline_costs_one_cycle():
    sim = make_sim()
    assert sim.advance() == 1
    assert sim.pipeline_cycles == 1
    assert sim.stages[Stage.FETCH] is BUBBLE


def test_push_places_slot_in_fetch_then_shifts():
    sim = make_sim()
    slot = rtype(0x100)
    sim.push(slot)
    assert sim.stages[Stage.FETCH] is slot
    assert sim.pipeline_cycles == 1

    for stage in (Stage.DECODE, Stage.ALU, Stage.MEM, Stage.WRITEBACK):
        before = list(sim.stages)
        sim.advance()
        assert sim.stages[stage] is slot
        assert sim.stages[Stage.FETCH].is_bubble
        assert sim.stages[1:] == before[:-1]


def test_drain_takes_pipeline_depth_advances():
    sim = make_sim()
    sim.push(rtype(0x100))
    assert sim.drain() == MAX_STAGES
    assert sim.instruction_count == 1
    assert sim.pipeline_cycles == 1 + MAX_STAGES
    assert sim.drain() == 0


def test_retire_counts_each_instruction_once():
    sim = make_sim()
    for i in range(4):
        sim.push(rtype(0x100 + 4 * i))
    assert sim.instruction_count == 0
    sim.drain()
    assert sim.instruction_count == 4
    assert sim.pipeline_cycles == 4 + MAX_STAGES


def test_instruction_at_address_zero_is_not_retired():
    sim = make_sim()
    sim.push(rtype(0))
    assert sim.drain() == MAX_STAGES
    assert sim.instruction_count == 0


def test_trace_nop_is_a_real_instruction():
    sim = make_sim()
    sim.push(StageSlot.nop(0x100))
    assert not sim.stages[Stage.FETCH].is_bubble
    assert sim.drain() == MAX_STAGES
    assert sim.instruction_count == 1


def test_cycles_grow_by_at_least_one_per_advance():
    sim = make_sim()
    slots = [StageSlot.lw(0x100, 1, 0x2000), StageSlot.branch(0x104),
             rtype(0x200), StageSlot.sw(0x204, 2, 0x3000), rtype(0x208)]
    last = 0
    for slot in slots:
        sim.push(slot)
        assert sim.pipeline_cycles >= last + 1
        last = sim.pipeline_cycles
    while not all(s.is_bubble for s in sim.stages):
        charged = sim.advance()
        assert charged >= 1
        assert sim.pipeline_cycles == last + charged
        assert sim.stages[Stage.FETCH].is_bubble
        last = sim.pipeline_cycles


# ── Branch prediction ───────────────────────────────────────────────────

@pytest.mark.parametrize("predict_taken, correct, cycles", [
    (0, 0, 8),      # mispredict costs one extra cycle
    (1, 1, 7),
])
def test_taken_branch(predict_taken, correct, cycles):
    sim = make_sim(predict_taken)
    sim.push(StageSlot.branch(0x100))
    sim.push(rtype(0x110))
    sim.drain()
    assert sim.branch_count == 1
    assert sim.correct_branch_predictions == correct
    assert sim.pipeline_cycles == cycles
    assert sim.instruction_count == 2


@pytest.mark.parametrize("predict_taken, correct, cycles", [
    (0, 1, 7),
    (1, 0, 8),
])
def test_fall_through_branch(predict_taken, correct, cycles):
    sim = make_sim(predict_taken)
    sim.push(StageSlot.branch(0x100))
    sim.push(rtype(0x104))
    sim.drain()
    assert sim.correct_branch_predictions == correct
    assert sim.pipeline_cycles == cycles


def test_branch_with_nothing_behind_it_reads_as_not_taken():
    sim = make_sim(0)
    sim.push(StageSlot.branch(0x100))
    sim.drain()
    assert sim.branch_count == 1
    assert sim.correct_branch_predictions == 1


def test_branch_count_counts_pushes():
    sim = make_sim(1)
    addrs = [0x100, 0x200, 0x300, 0x304, 0x400]
    for a in addrs:
        sim.push(StageSlot.branch(a))
    sim.push(rtype(0x500))
    sim.drain()
    assert sim.branch_count == len(addrs)
    assert sim.correct_branch_predictions <= sim.branch_count
    # 0x300 -> 0x304 fell through; every other branch was followed by a jump away
    assert sim.correct_branch_predictions == 4
    assert sim.branch_predictor.accuracy == pytest.approx(4 / 5)


def test_taken_branch_is_logged(caplog):
    caplog.set_level(logging.DEBUG, logger="pipeline_cache_sim")
    sim = make_sim()
    sim.push(StageSlot.branch(0x100))
    sim.push(rtype(0x110))
    sim.drain()
    assert "Branch taken: FETCH addr = 0x110, DECODE instr addr = 0x100" in caplog.text
    assert "Retired instruction at 0x100" in caplog.text


# ── Data accesses ───────────────────────────────────────────────────────

def test_load_miss_charges_miss_delay():
    sim = make_sim()
    sim.push(StageSlot.lw(0x100, 1, 0x2000))
    charged = [sim.advance() for _ in range(MAX_STAGES)]
    assert charged == [1, 1, 1, CACHE_MISS_DELAY, 1]
    assert sim.pipeline_cycles == 1 + 4 + CACHE_MISS_DELAY
    assert (sim.cache_access, sim.cache_miss, sim.cache_hit) == (1, 1, 0)


def test_two_loads_same_address_miss_then_hit():
    sim = make_sim()
    sim.push(StageSlot.lw(0x100, 1, 0x2000))
    sim.push(StageSlot.lw(0x104, 2, 0x2000))
    charged = []
    while not all(s.is_bubble for s in sim.stages):
        charged.append(sim.advance())
    assert charged == [1, 1, CACHE_MISS_DELAY, 1, 1]
    assert sim.cache_miss == 1
    assert sim.cache_hit == 1
    assert sim.pipeline_cycles == 2 + 14


def test_store_probes_cache():
    sim = make_sim()
    sim.push(StageSlot.sw(0x100, 1, 0x3000))
    sim.drain()
    assert (sim.cache_access, sim.cache_miss) == (1, 1)
    # The stored block is now resident
    assert sim.cache.probe(0x3000) is True


def test_data_miss_overrides_mispredict():
    sim = make_sim(0)
    sim.push(StageSlot.lw(0x100, 1, 0x2000))
    sim.push(rtype(0x104))
    sim.push(StageSlot.branch(0x108))
    sim.push(rtype(0x200))
    assert sim.stages[Stage.MEM].kind == InstructionKind.LW
    assert sim.stages[Stage.DECODE].kind == InstructionKind.BRANCH

    assert sim.advance() == CACHE_MISS_DELAY
    assert sim.correct_branch_predictions == 0
    sim.drain()
    assert sim.pipeline_cycles == 4 + CACHE_MISS_DELAY + 4


def test_miss_delay_is_configurable():
    sim = make_sim(miss_delay=3)
    sim.push(StageSlot.lw(0x100, 1, 0x2000))
    sim.drain()
    assert sim.pipeline_cycles == 1 + 4 + 3


# ── Instruction fetch ───────────────────────────────────────────────────

def test_fetch_miss_stalls_before_push():
    sim = make_sim()
    slot = rtype(0x1000)
    sim.fetch(slot)
    assert sim.pipeline_cycles == CACHE_MISS_DELAY
    assert sim.stages[Stage.FETCH] is slot
    assert all(s.is_bubble for s in sim.stages[1:])
    assert (sim.cache_access, sim.cache_miss) == (1, 1)


def test_fetch_hit_in_same_block():
    # 2-word blocks put 0x1000 and 0x1004 in the same line
    sim = PipelineCacheSim(5, 2, 1, 0)
    sim.fetch(StageSlot.nop(0x1000))
    sim.fetch(StageSlot.nop(0x1004))
    assert (sim.cache_hit, sim.cache_miss) == (1, 1)
    assert sim.pipeline_cycles == CACHE_MISS_DELAY + 1


def test_fetch_miss_hides_branch_outcome():
    """During a fetch stall the branch meets a bubble, so it reads as not taken."""
    sim = make_sim(0)
    sim.fetch(StageSlot.branch(0x1000))
    sim.fetch(StageSlot.nop(0x1010))
    assert sim.correct_branch_predictions == 1
    assert sim.pipeline_cycles == 20
    sim.drain()
    assert sim.pipeline_cycles == 25
    assert sim.instruction_count == 2


def test_fetch_miss_with_taken_prediction_pays_once():
    sim = make_sim(1)
    sim.fetch(StageSlot.branch(0x1000))
    sim.fetch(StageSlot.nop(0x1010))
    sim.drain()
    assert sim.correct_branch_predictions == 0
    assert sim.pipeline_cycles == 26


def test_verbose_access_lines(capsys):
    sim = make_sim(verbose=True)
    sim.fetch(StageSlot.lw(0x1000, 1, 0x2004))
    sim.fetch(StageSlot.lw(0x1000, 1, 0x2004))
    sim.drain()
    out = capsys.readouterr().out
    assert "Address 1000: Tag= 20, Index= 0" in out
    assert "INST MISS:\t Address 0x1000" in out
    assert "INST HIT:\t Address 0x1000" in out
    assert "DATA MISS:\t Address 0x2004" in out
    assert "DATA HIT:\t Address 0x2004" in out


def test_quiet_by_default(capsys):
    sim = make_sim()
    sim.fetch(rtype(0x1000))
    assert capsys.readouterr().out == ""


# ── Dump / report ───────────────────────────────────────────────────────

def test_dump_pipeline_format():
    sim = make_sim()
    assert sim.dump_pipeline() == (
        "(cyc: 0) FETCH:\t 0: 0x0 \tDECODE:\t 0: 0x0 \tALU:\t 0: 0x0 "
        "\tMEM:\t 0: 0x0 \tWB:\t 0: 0x0")
    sim.push(StageSlot.lw(0x100, 1, 0x2000))
    sim.push(StageSlot.branch(0x104))
    assert sim.dump_pipeline().startswith(
        "(cyc: 2) FETCH:\t 4: 0x104 \tDECODE:\t 2: 0x100 \tALU:\t 0: 0x0")


@pytest.mark.parametrize("index", [-1, MAX_STAGES, 99])
def test_format_stage_rejects_bad_index(index):
    sim = make_sim()
    with pytest.raises(PipelineDumpError, match="Bad stage"):
        sim.format_stage(index)
    with pytest.raises(IndexError):
        sim.format_stage(index)


def test_finalize_drains_and_reports():
    sim = make_sim()
    sim.process_line("1000 nop")
    report = sim.finalize()
    assert all(s.is_bubble for s in sim.stages)
    assert "\t Total Cycles is 15" in report
    assert "\t Total Instructions is 1" in report
    assert "\t Cache Miss Rate is 1.000000" in report
    assert "\t CPI is 15.000000" in report


def test_report_with_nothing_run():
    report = make_sim().report()
    assert "\t Cache Miss Rate is 0.000000" in report
    assert "\t Branch Prediction Accuracy is 0.000000" in report
    assert "\t CPI is 0.000000" in report


def test_report_shows_branch_accuracy():
    sim = make_sim()
    # Not-taken prediction: the first branch jumps away, the second falls through
    sim.push(StageSlot.branch(0x100))
    sim.push(StageSlot.branch(0x200))
    sim.push(rtype(0x204))
    sim.drain()
    report = sim.report()
    assert "\t Total Branch Instructions is 2" in report
    assert "\t Total Correct Branch Predictions is 1" in report
    assert "\t Branch Prediction Accuracy is 0.500000" in report


# ── Configuration ───────────────────────────────────────────────────────

@pytest.mark.parametrize("kwargs", [
    {"predict_taken": 2},
    {"predict_taken": -1},
    {"miss_delay": 0},
])
def test_rejects_bad_config(kwargs):
    with pytest.raises(ConfigError):
        make_sim(**kwargs)


def test_instances_are_independent():
    a, b = make_sim(), make_sim(1)
    a.fetch(rtype(0x1000))
    assert b.pipeline_cycles == 0
    assert b.cache_access == 0
    assert b.branch_predict_taken == 1
    assert a.branch_predict_taken == 0
