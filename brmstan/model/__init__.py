# Copyright (c) Microsoft Corporation.
# Licensed under the MIT license.

"""Model specification, data preparation, Stan code generation and fitting."""
