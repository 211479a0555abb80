# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.


"""Preparation of the data passed to generated Stan programs."""

from brmstan.model.data.standata import (
    DesignInfo,
    make_standata,
    make_standata_info,
    PredictorInfo,
)
